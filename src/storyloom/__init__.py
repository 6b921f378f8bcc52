"""Storyloom - multi-provider story and illustration generation for children's books."""

__version__ = "0.1.0"
