import asyncio
import logging
import threading
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from starlette.concurrency import run_in_threadpool

from ..core.config import settings
from ..core.deps import get_owner_id, get_pipeline, get_repository
from ..core.models import ErrorDetail, ListResponse, ModerationSummary, PhotoItem, UploadResponse
from ..aws.repository import MetadataRepository
from ..pipeline.intents import PhotoIntent, profile_for
from ..pipeline.orchestrator import PhotoPipeline
from ..pipeline.types import StoredPhoto, UploadRequest

log = logging.getLogger(__name__)

router = APIRouter(prefix="/photos", tags=["photos"])


async def _watch_disconnect(request: Request, cancel_token: threading.Event) -> None:
    while not cancel_token.is_set():
        if await request.is_disconnected():
            cancel_token.set()
            return
        await asyncio.sleep(0.1)


def _summary(photo: StoredPhoto) -> ModerationSummary:
    v = photo.moderation
    return ModerationSummary(decision=v.decision.value, category=v.category.value, confidence=v.confidence)


def _item(photo: StoredPhoto) -> PhotoItem:
    return PhotoItem(
        id=photo.id,
        url=photo.blob_url,
        thumbnail_url=photo.thumbnail_url,
        width=photo.width,
        height=photo.height,
        mime_type=photo.mime_type,
        original_size=photo.original_size,
        processed_size=photo.processed_size,
        intent=photo.intent.value,
        caption=photo.caption,
        moderation=_summary(photo),
        created_at=photo.created_at,
    )


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=201,
    summary="Upload a photo (JPEG/PNG/GIF/WebP)",
    description=(
        "Multipart upload. The photo is validated, stripped of capture metadata, re-encoded "
        "(WebP, or GIF for animations), checked by content moderation and only then stored.\n\n"
        "Fields:\n"
        "- `file` (required): the image file.\n"
        "- `photo_intent` (optional): AVATAR, COVER, CAMPAIGN, VERIFICATION, EVENT, GALLERY or POST_MEDIA.\n"
        "- `caption` (optional): up to 200 characters.\n\n"
        "The owner comes from the `X-User-Id` header set by the auth gateway."
    ),
)
async def upload_photo(
    request: Request,
    file: UploadFile = File(...),
    photo_intent: PhotoIntent = Form(PhotoIntent.POST_MEDIA),
    caption: Optional[str] = Form(None),
    owner_id: str = Depends(get_owner_id),
    pipeline: PhotoPipeline = Depends(get_pipeline),
):
    # One byte over the ceiling is enough for the validator to reject it
    data = await file.read(settings.max_upload_bytes + 1)
    upload = UploadRequest(
        data=data,
        declared_mime=file.content_type or "application/octet-stream",
        declared_filename=file.filename,
        owner_id=owner_id,
        intent=photo_intent,
        caption=caption,
    )

    cancel_token = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_token))
    try:
        result = await run_in_threadpool(pipeline.run, upload, cancel_token=cancel_token)
    finally:
        watcher.cancel()

    if not result.ok:
        err = result.error
        raise HTTPException(
            status_code=err.status_code,
            detail=ErrorDetail(
                error=err.kind,
                message=err.user_message,
                retryable=err.retryable,
                correlation_id=result.correlation_id,
            ).model_dump(),
        )

    photo = result.photo
    return UploadResponse(
        id=photo.id,
        url=photo.blob_url,
        width=photo.width,
        height=photo.height,
        moderation=_summary(photo),
        pending_review=profile_for(photo.intent).requires_review,
    )


@router.get(
    "",
    response_model=ListResponse,
    summary="List my photos",
    description="Returns the caller's photos, newest first. Soft-deleted photos are left out.",
)
def list_photos(
    owner_id: str = Depends(get_owner_id),
    repository: MetadataRepository = Depends(get_repository),
):
    try:
        items = [_item(p) for p in repository.list_for_owner(owner_id)]
        return ListResponse(count=len(items), items=items)
    except Exception as e:
        log.exception("listing photos for %s failed", owner_id)
        raise HTTPException(status_code=500, detail=f"list_failed {e}")


@router.delete(
    "/{photo_id}",
    summary="Delete a photo",
    description=(
        "Soft-deletes the photo: it stops appearing in listings and stops counting toward the "
        "storage quota. The stored bytes are removed later by the retention job.\n"
        "Returns 404 if the photo does not exist and 403 if it belongs to someone else."
    ),
)
def delete_photo(
    photo_id: str,
    owner_id: str = Depends(get_owner_id),
    repository: MetadataRepository = Depends(get_repository),
):
    try:
        photo = repository.soft_delete(photo_id, owner_id)
        return {"deleted": photo.id, "deleted_at": photo.deleted_at}
    except KeyError:
        raise HTTPException(status_code=404, detail="not_found")
    except PermissionError:
        raise HTTPException(status_code=403, detail="forbidden")
    except Exception as e:
        log.exception("deleting photo %s failed", photo_id)
        raise HTTPException(status_code=500, detail=f"delete_failed {e}")
