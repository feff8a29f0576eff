"""FastAPI dependencies wiring the pipeline to its AWS adapters.

Tests swap any of these through ``app.dependency_overrides``.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException

from .config import settings
from ..aws.blob_store import S3BlobStore
from ..aws.repository import MetadataRepository
from ..pipeline.moderation import ContentModerator
from ..pipeline.orchestrator import PhotoPipeline
from ..pipeline.transformer import ImageTransformer
from ..pipeline.validator import Validator


def get_owner_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """The auth gateway verifies the token and forwards the user id."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="missing_user")
    return x_user_id


def get_repository() -> MetadataRepository:
    return MetadataRepository(settings)


def get_blob_store() -> S3BlobStore:
    return S3BlobStore(settings)


def get_moderator() -> ContentModerator:
    return ContentModerator.from_settings(settings)


def get_pipeline(
    repository: MetadataRepository = Depends(get_repository),
    blob_store: S3BlobStore = Depends(get_blob_store),
    moderator: ContentModerator = Depends(get_moderator),
) -> PhotoPipeline:
    return PhotoPipeline(
        validator=Validator(settings),
        transformer=ImageTransformer(settings),
        moderator=moderator,
        blob_store=blob_store,
        repository=repository,
        settings=settings,
    )
