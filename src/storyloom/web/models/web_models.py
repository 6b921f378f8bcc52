"""Web-specific Pydantic models for the FastAPI application."""

from typing import List, Optional

from pydantic import BaseModel, Field

from storyloom.models import AgeGroup, Chapter, IllustrationJob, IllustrationOptions


class StoryRequest(BaseModel):
    """Request model for generating a story."""
    characters: List[str] = Field(min_length=1)
    theme: str = Field(min_length=1, max_length=200)
    age_group: str = Field(default=AgeGroup.EARLY_READER.value)
    child_name: Optional[str] = Field(default=None, max_length=100)
    text_only: bool = False
    tier: Optional[str] = None


class ChapterImageRequest(BaseModel):
    """Request model for illustrating one chapter."""
    chapter_title: str = Field(min_length=1)
    chapter_content: str = Field(min_length=1)
    character_names: Optional[List[str]] = None
    image_prompt: Optional[str] = Field(default=None, description="Scene direction for the illustration")
    options: IllustrationOptions = Field(default_factory=IllustrationOptions)
    tier: Optional[str] = None


class IllustrationRequest(BaseModel):
    """Request model for illustrating every chapter of a story."""
    chapters: List[Chapter] = Field(min_length=1)
    options: IllustrationOptions = Field(default_factory=IllustrationOptions)
    tier: Optional[str] = None


class IllustrationProgressResponse(BaseModel):
    """Progress of a background illustration run."""
    job: IllustrationJob
    chapters: List[Chapter]


class AudioRequest(BaseModel):
    """Request model for narrating text."""
    text: str = Field(min_length=1)
    voice: Optional[str] = None
    tier: Optional[str] = None


class ApiKeyRequest(BaseModel):
    """Request model for swapping a provider API key."""
    api_key: str = Field(min_length=1)
