"""PhotoPipeline: drives one upload through every stage in order.

    RECEIVED -> VALIDATED -> TRANSFORMED -> MODERATED -> STORED -> PERSISTED
                                  any state -> FAILED(kind)

``run`` never raises for a stage failure. Each failure is mapped to exactly
one ``PhotoPipelineError`` on the returned result, and logged with the run's
correlation id. Bytes reach storage only after they have been transformed and
the moderator has not blocked them.
"""
import logging
import threading
import uuid
from typing import Optional

from ..core import errors
from ..core.config import Settings, settings as default_settings
from ..core.logs import bind
from .intents import profile_for
from .types import (
    Decision,
    ModerationContext,
    PipelineResult,
    PipelineState,
    UploadRequest,
)

logger = logging.getLogger(__name__)

CAPTION_MAX_CHARS = 200


class PhotoPipeline:
    def __init__(self, validator, transformer, moderator, blob_store, repository,
                 settings: Settings = default_settings):
        self.validator = validator
        self.transformer = transformer
        self.moderator = moderator
        self.blob_store = blob_store
        self.repository = repository
        self.settings = settings

    def run(
        self,
        request: UploadRequest,
        *,
        correlation_id: Optional[str] = None,
        cancel_token: Optional[threading.Event] = None,
    ) -> PipelineResult:
        correlation_id = correlation_id or uuid.uuid4().hex
        log = bind(logger, correlation_id)
        result = PipelineResult(correlation_id=correlation_id)

        log.info(
            "pipeline start owner=%s intent=%s size=%d mime=%s",
            request.owner_id, request.intent.value, len(request.data), request.declared_mime,
        )

        def failed(error: errors.PhotoPipelineError, *, exc_info=False) -> PipelineResult:
            level = logging.WARNING if (error.user_correctable or not error.retryable) else logging.ERROR
            log.log(level, "pipeline failed in %s: %s: %s", result.state.value, error.kind, error.message,
                    exc_info=exc_info)
            return result.fail(error)

        def cancelled() -> bool:
            return cancel_token is not None and cancel_token.is_set()

        # Stage 1: validate
        try:
            outcome = self.validator.validate(request.data, request.declared_mime, request.declared_filename)
            outcome.raise_for_error()
        except errors.ValidationError as e:
            return failed(e)
        except Exception as e:
            return failed(errors.ValidationError(f"validator crashed: {e}",
                                                 user_message="The file could not be checked."), exc_info=True)
        result.advance(PipelineState.VALIDATED)
        log.info("validated %sx%s %s", outcome.width, outcome.height, outcome.detected_mime)

        # Best effort, no lock: N concurrent uploads by one owner can overcommit by N-1 uploads
        try:
            usage = self.repository.storage_usage(request.owner_id)
        except Exception as e:
            return failed(errors.StorageError(f"storage usage lookup failed: {e}"), exc_info=True)
        quota = self.settings.storage_quota_bytes
        if usage + len(request.data) > quota:
            return failed(errors.QuotaExceededError(
                f"usage {usage} + {len(request.data)} exceeds quota {quota}",
                user_message=(
                    f"Storage limit exceeded. You are using {usage // (1024 * 1024)}MB "
                    f"of {quota // (1024 * 1024)}MB."
                ),
            ))

        if cancelled():
            return failed(errors.PipelineCancelled("client went away before transform"))

        # Stage 2: transform
        profile = profile_for(request.intent)
        try:
            processed = self.transformer.transform(request.data, outcome.detected_mime, max_size=profile.bounds)
        except errors.TransformError as e:
            return failed(e)
        except Exception as e:
            return failed(errors.TransformError(f"transformer crashed: {e}",
                                                user_message="The image could not be processed."), exc_info=True)
        result.advance(PipelineState.TRANSFORMED)
        log.info(
            "transformed to %s %dx%d frames=%d size %d -> %d",
            processed.mime_type, processed.width, processed.height, processed.frame_count,
            processed.original_size, processed.size,
        )

        if cancelled():
            return failed(errors.PipelineCancelled("client went away before moderation"))

        # Stage 3: moderate the transformed bytes, never the raw upload
        context = ModerationContext(
            owner_id=request.owner_id, photo_intent=request.intent, correlation_id=correlation_id,
        )
        try:
            verdict = self.moderator.moderate(processed, context)
        except errors.ModerationInputRejected as e:
            return failed(errors.ModerationUnavailable(
                str(e), retryable=False,
                user_message="This image cannot be checked by content moderation. Try a smaller image.",
            ))
        except errors.ModerationServiceError as e:
            return failed(errors.ModerationUnavailable(str(e)))
        except Exception as e:
            return failed(errors.ModerationUnavailable(f"moderator crashed: {e}"), exc_info=True)
        result.verdict = verdict
        log.info("moderation %s category=%s confidence=%.2f latency=%dms",
                 verdict.decision.value, verdict.category.value, verdict.confidence, verdict.latency_ms)
        if verdict.decision is Decision.BLOCK:
            return failed(errors.ModerationRejected(
                f"blocked as {verdict.category.value}",
                category=verdict.category.value,
                user_message="This photo violates our community guidelines and cannot be uploaded.",
            ))
        result.advance(PipelineState.MODERATED)

        # Last point where a disconnect can stop the run without leaving writes behind
        if cancelled():
            return failed(errors.PipelineCancelled("client went away before storage"))

        # Stage 4: store
        photo_id = uuid.uuid4().hex
        key = f"photos/{photo_id}.{processed.extension}"
        try:
            url = self.blob_store.upload(
                processed.data, processed.mime_type, key,
                owner_id=request.owner_id, correlation_id=correlation_id,
            )
        except errors.StorageError as e:
            return failed(e)
        except Exception as e:
            return failed(errors.StorageError(f"blob store crashed: {e}"), exc_info=True)
        result.advance(PipelineState.STORED)
        log.info("stored %s", key)

        # Stage 5: persist
        caption = request.caption[:CAPTION_MAX_CHARS] if request.caption else None
        try:
            photo = self.repository.persist(
                request.owner_id, url, processed, verdict,
                photo_id=photo_id, object_key=key, intent=request.intent, caption=caption,
            )
        except errors.PersistenceError as e:
            e.orphan_key = e.orphan_key or key
            return failed(e)
        except Exception as e:
            return failed(errors.PersistenceError(f"repository crashed: {e}", orphan_key=key), exc_info=True)
        result.photo = photo
        result.advance(PipelineState.PERSISTED)

        try:
            self.blob_store.confirm(key)
        except errors.StorageError:
            # The record exists, so reconciliation will only clear the marker
            log.warning("pending marker for %s not cleared", key, exc_info=True)

        log.info("pipeline complete photo_id=%s", photo.id)
        return result
