from fastapi import FastAPI
from .core.config import settings
from .core.logs import configure_logging
from .pipeline.moderation import policy_from_settings
from .routers.photos import router as photos_router

configure_logging(settings.log_level)
# Refuse to start with a moderation mode the environment does not allow
policy_from_settings(settings)

tags_metadata = [
    {
        "name": "photos",
        "description": (
            "Endpoints to upload, list and delete photos.\n\n"
            "- Upload via multipart.\n"
            "- Size/type/signature/dimension validation before any processing.\n"
            "- Capture metadata is stripped and images are re-encoded before moderation.\n"
            "- Only moderated, sanitized bytes are stored."
        ),
    }
]

app = FastAPI(
    title="Photo Upload Service",
    description=(
        "How to Use:\n\n"
        "1) Upload a photo: POST /photos/upload with a JPG/PNG/GIF/WebP `file`, an optional `photo_intent` and `caption`.\n"
        "2) List photos: GET /photos returns the caller's photos.\n"
        "3) Delete: DELETE /photos/{photo_id} soft-deletes a photo.\n\n"
        "Notes: every request must carry the `X-User-Id` header set by the auth gateway. "
        "Failures return `{error, message, retryable, correlation_id}`."
    ),
    openapi_tags=tags_metadata,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.include_router(photos_router)
