"""Web API for the story generation service."""
