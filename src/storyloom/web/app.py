"""FastAPI application exposing the story generation service."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storyloom import __version__
from storyloom.error_handling import (
    ExhaustedFallback,
    InvalidApiKeyFormat,
    ProviderUnavailable,
    StoryloomError,
    ValidationError,
)
from storyloom.service import StoryGenerationService
from storyloom.web.routes import providers, stories


logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidApiKeyFormat: status.HTTP_400_BAD_REQUEST,
    ProviderUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    ExhaustedFallback: status.HTTP_502_BAD_GATEWAY,
}


def create_app(service: StoryGenerationService | None = None) -> FastAPI:
    """Create the API application around ``service`` (built from the environment if omitted)."""
    app = FastAPI(
        title="Storyloom API",
        description="Illustrated children's story generation across AI providers",
        version=__version__,
    )
    app.state.service = service or StoryGenerationService.from_context()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoryloomError)
    async def handle_storyloom_error(request: Request, exc: StoryloomError):
        status_code = ERROR_STATUS_CODES.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        content = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, ExhaustedFallback):
            content["attempted_providers"] = exc.attempted_providers
        return JSONResponse(status_code=status_code, content=content)

    app.include_router(providers.router, prefix="/api/providers", tags=["providers"])
    app.include_router(stories.router, prefix="/api/stories", tags=["stories"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "storyloom-api"}

    return app
