"""Shared FastAPI dependencies."""

from fastapi import Request

from storyloom.service import StoryGenerationService


def get_service(request: Request) -> StoryGenerationService:
    return request.app.state.service
