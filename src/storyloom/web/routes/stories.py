"""API routes for story generation and illustration."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from storyloom.models import AudioGenerationResult, GeneratedStory, IllustrationJob, ImageGenerationResult
from storyloom.service import StoryGenerationService
from storyloom.web.dependencies import get_service
from storyloom.web.models.web_models import (
    AudioRequest,
    ChapterImageRequest,
    IllustrationProgressResponse,
    IllustrationRequest,
    StoryRequest,
)


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/generate", response_model=GeneratedStory)
async def generate_story(request: StoryRequest, service: StoryGenerationService = Depends(get_service)):
    """Write a story and split it into chapters."""
    return await service.generate_story_text(
        request.characters,
        request.theme,
        request.age_group,
        child_name=request.child_name,
        text_only=request.text_only,
        tier=request.tier,
    )


@router.post("/chapter-image", response_model=ImageGenerationResult)
async def generate_chapter_image(request: ChapterImageRequest, service: StoryGenerationService = Depends(get_service)):
    """Illustrate one chapter. Falls back to a backup image instead of failing."""
    return await service.generate_chapter_image(
        request.chapter_title,
        request.chapter_content,
        request.character_names,
        request.options,
        tier=request.tier,
        image_prompt=request.image_prompt,
    )


@router.post("/audio", response_model=AudioGenerationResult)
async def generate_audio(request: AudioRequest, service: StoryGenerationService = Depends(get_service)):
    """Narrate text as base64 mp3."""
    return await service.generate_audio(request.text, voice=request.voice, tier=request.tier)


@router.post("/{story_id}/illustrations", response_model=IllustrationJob, status_code=status.HTTP_202_ACCEPTED)
async def start_illustrations(
    story_id: str,
    request: IllustrationRequest,
    service: StoryGenerationService = Depends(get_service),
):
    """Start illustrating every chapter in the background."""
    return await service.generate_all_illustrations(story_id, request.chapters, request.options, tier=request.tier)


@router.get("/{story_id}/illustrations", response_model=IllustrationProgressResponse)
async def get_illustrations(story_id: str, service: StoryGenerationService = Depends(get_service)):
    job = service.get_illustration_job(story_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No illustration run for story {story_id}",
        )
    return IllustrationProgressResponse(job=job, chapters=service.get_job_chapters(story_id))
