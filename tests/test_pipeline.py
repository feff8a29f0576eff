import logging
import threading

import boto3
import httpx
import pytest
from botocore.exceptions import ClientError

from conftest import bucket_keys, executable_bytes, gif_bytes, jpeg_bytes, png_bytes
from photo_service.aws.blob_store import S3BlobStore
from photo_service.aws.repository import MetadataRepository
from photo_service.core import errors
from photo_service.core.config import Settings
from photo_service.pipeline.intents import PhotoIntent
from photo_service.pipeline.moderation import (
    ContentModerator,
    ContentSafetyClient,
    PermissiveModerationPolicy,
    StrictModerationPolicy,
)
from photo_service.pipeline.orchestrator import PhotoPipeline
from photo_service.pipeline.transformer import ImageTransformer
from photo_service.pipeline.types import (
    ContentCategory,
    Decision,
    ModerationVerdict,
    PipelineState,
    StoredPhoto,
    UploadRequest,
)
from photo_service.pipeline.validator import Validator

S = PipelineState


class FakeModerator:
    def __init__(self, verdict=None, error=None):
        self.verdict = verdict or ModerationVerdict(Decision.APPROVE, ContentCategory.CLEAN, 0.95, 5)
        self.error = error
        self.calls = []

    def moderate(self, processed, context):
        self.calls.append((processed, context))
        if self.error is not None:
            raise self.error
        return self.verdict


class FakeBlobStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = []
        self.confirmed = []

    def upload(self, data, mime, key, *, owner_id=None, correlation_id=None):
        if self.fail:
            raise errors.StorageError("bucket unavailable")
        self.uploads.append((data, mime, key))
        return f"https://cdn.example.test/{key}"

    def confirm(self, key):
        self.confirmed.append(key)


class FakeRepository:
    def __init__(self, usage=0, fail=False):
        self.usage = usage
        self.fail = fail
        self.persisted = []

    def storage_usage(self, owner_id):
        return self.usage

    def persist(self, owner_id, blob_url, processed, verdict, *, photo_id, object_key, intent, caption=None):
        if self.fail:
            raise errors.PersistenceError("db down", orphan_key=object_key)
        photo = StoredPhoto(
            id=photo_id, owner_id=owner_id, blob_url=blob_url, object_key=object_key,
            original_size=processed.original_size, processed_size=processed.size,
            mime_type=processed.mime_type, width=processed.width, height=processed.height,
            intent=intent, moderation=verdict, created_at=1000, caption=caption,
        )
        self.persisted.append(photo)
        return photo


def _request(data=None, mime="image/jpeg", filename="photo.jpg", intent=PhotoIntent.POST_MEDIA, caption=None):
    return UploadRequest(
        data=jpeg_bytes() if data is None else data,
        declared_mime=mime,
        declared_filename=filename,
        owner_id="u1",
        intent=intent,
        caption=caption,
    )


def _pipeline(moderator=None, blob_store=None, repository=None, settings=None):
    settings = settings or Settings()
    return PhotoPipeline(
        Validator(settings),
        ImageTransformer(settings),
        moderator or FakeModerator(),
        blob_store or FakeBlobStore(),
        repository or FakeRepository(),
        settings=settings,
    )


def test_run_walks_every_state_success():
    moderator, store, repo = FakeModerator(), FakeBlobStore(), FakeRepository()
    raw = jpeg_bytes()

    result = _pipeline(moderator, store, repo).run(_request(raw), correlation_id="corr-1")

    assert result.ok
    assert result.history == [S.RECEIVED, S.VALIDATED, S.TRANSFORMED, S.MODERATED, S.STORED, S.PERSISTED]
    assert result.correlation_id == "corr-1"
    photo = result.photo
    assert photo.mime_type == "image/webp"
    assert photo.processed_size < len(raw)
    assert photo.object_key.startswith("photos/") and photo.object_key.endswith(".webp")
    assert "photo.jpg" not in photo.object_key
    # Exactly one upload, of exactly the moderated bytes
    processed, _ = moderator.calls[0]
    assert store.uploads == [(processed.data, "image/webp", photo.object_key)]
    assert store.confirmed == [photo.object_key]


def test_moderator_never_sees_raw_bytes_success():
    moderator = FakeModerator()
    raw = jpeg_bytes()
    _pipeline(moderator).run(_request(raw))
    processed, context = moderator.calls[0]
    assert processed.data != raw
    assert processed.data[:4] == b"RIFF"
    assert context.owner_id == "u1"
    assert context.photo_intent is PhotoIntent.POST_MEDIA


def test_gif_stays_gif_success():
    store = FakeBlobStore()
    result = _pipeline(blob_store=store).run(_request(gif_bytes(), "image/gif", "anim.gif"))
    assert result.ok
    assert result.photo.mime_type == "image/gif"
    assert store.uploads[0][2].endswith(".gif")


def test_intent_bounds_and_caption_success():
    repo = FakeRepository()
    result = _pipeline(repository=repo).run(
        _request(png_bytes(size=(800, 400)), "image/png", "cover.png", PhotoIntent.AVATAR, caption="x" * 300)
    )
    assert result.ok
    assert (result.photo.width, result.photo.height) == (400, 200)
    assert len(result.photo.caption) == 200


def test_oversized_upload_stops_before_any_work_failure():
    moderator, store, repo = FakeModerator(), FakeBlobStore(), FakeRepository()
    data = b"\x89PNG\r\n\x1a\n" + b"\x00" * (6 * 1024 * 1024)

    result = _pipeline(moderator, store, repo).run(_request(data, "image/png", "huge.png"))

    assert result.state is S.FAILED
    assert result.history == [S.RECEIVED, S.FAILED]
    assert isinstance(result.error, errors.SizeError)
    assert isinstance(result.error, errors.ValidationError)
    assert result.error.user_correctable and not result.error.retryable
    assert moderator.calls == [] and store.uploads == [] and repo.persisted == []


def test_renamed_executable_failure():
    moderator = FakeModerator()
    result = _pipeline(moderator).run(_request(executable_bytes(), "image/jpeg", "photo.jpg"))
    assert result.failure_kind == "SignatureMismatchError"
    assert isinstance(result.error, errors.ValidationError)
    assert moderator.calls == []


def test_quota_checked_before_transform_failure():
    moderator = FakeModerator()
    settings = Settings(storage_quota_bytes=10_000)
    result = _pipeline(moderator, repository=FakeRepository(usage=9_900), settings=settings).run(_request())
    assert result.failure_kind == "QuotaExceeded"
    assert result.history == [S.RECEIVED, S.VALIDATED, S.FAILED]
    assert moderator.calls == []


def test_blocked_content_failure():
    moderator = FakeModerator(ModerationVerdict(Decision.BLOCK, ContentCategory.EXPLICIT, 0.97, 8))
    store, repo = FakeBlobStore(), FakeRepository()

    result = _pipeline(moderator, store, repo).run(_request())

    assert isinstance(result.error, errors.ModerationRejected)
    assert result.error.category == "EXPLICIT"
    assert not result.error.retryable
    assert result.history[-2:] == [S.TRANSFORMED, S.FAILED]
    assert store.uploads == [] and repo.persisted == []


def test_warn_is_stored_with_verdict_success():
    verdict = ModerationVerdict(Decision.WARN, ContentCategory.GRAPHIC, 0.5, 8)
    result = _pipeline(FakeModerator(verdict)).run(_request())
    assert result.ok
    assert result.photo.moderation == verdict


def test_moderation_outage_fails_closed_failure():
    store, repo = FakeBlobStore(), FakeRepository()
    moderator = FakeModerator(error=errors.ModerationServiceError("timed out"))

    result = _pipeline(moderator, store, repo).run(_request())

    assert isinstance(result.error, errors.ModerationUnavailable)
    assert result.error.retryable
    assert store.uploads == [] and repo.persisted == []


def test_storage_failure_creates_no_record_failure():
    repo = FakeRepository()
    result = _pipeline(blob_store=FakeBlobStore(fail=True), repository=repo).run(_request())
    assert isinstance(result.error, errors.StorageError)
    assert result.error.retryable
    assert result.history[-2:] == [S.MODERATED, S.FAILED]
    assert repo.persisted == []


def test_persistence_failure_keeps_orphan_key_failure():
    store = FakeBlobStore()
    result = _pipeline(blob_store=store, repository=FakeRepository(fail=True)).run(_request())
    assert isinstance(result.error, errors.PersistenceError)
    assert result.photo is None
    assert result.error.orphan_key == store.uploads[0][2]
    assert store.confirmed == []


def test_unexpected_stage_exception_is_mapped_failure():
    class Exploding(FakeModerator):
        def moderate(self, processed, context):
            raise RuntimeError("kaboom")

    result = _pipeline(Exploding()).run(_request())
    assert isinstance(result.error, errors.ModerationUnavailable)


def test_validator_crash_keeps_details_out_of_user_message_failure():
    class ExplodingValidator(Validator):
        def validate(self, data, declared_mime, declared_filename):
            raise RuntimeError("/srv/internal/path unreadable")

    pipeline = _pipeline()
    pipeline.validator = ExplodingValidator(Settings())
    result = pipeline.run(_request())

    assert isinstance(result.error, errors.ValidationError)
    assert "/srv/internal" in result.error.message
    assert "/srv/internal" not in result.error.user_message


def test_image_refused_by_moderation_service_is_not_retryable_failure():
    store = FakeBlobStore()
    moderator = FakeModerator(error=errors.ModerationInputRejected("moderation service refused the image (400)"))

    result = _pipeline(moderator, store).run(_request())

    assert result.failure_kind == "ModerationUnavailable"
    assert result.error.retryable is False
    assert result.error.status_code == 422
    assert "smaller image" in result.error.user_message
    assert store.uploads == []


def test_every_log_record_carries_correlation_id_success(caplog):
    caplog.set_level(logging.INFO, logger="photo_service")

    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)
    client = ContentSafetyClient("https://moderation.test", "secret", transport=httpx.MockTransport(handler))

    result = _pipeline(ContentModerator(client, PermissiveModerationPolicy())).run(
        _request(), correlation_id="CID-42"
    )

    assert result.ok
    assert result.verdict.category is ContentCategory.UNKNOWN
    records = [r for r in caplog.records if r.name.startswith("photo_service")]
    assert {r.name for r in records} >= {
        "photo_service.pipeline.orchestrator", "photo_service.pipeline.moderation",
    }
    assert all(getattr(r, "correlation_id", None) == "CID-42" for r in records)


def test_cancellation_stops_before_storage_failure():
    token = threading.Event()
    store = FakeBlobStore()

    class CancellingModerator(FakeModerator):
        def moderate(self, processed, context):
            token.set()
            return super().moderate(processed, context)

    result = _pipeline(CancellingModerator(), store).run(_request(), cancel_token=token)

    assert isinstance(result.error, errors.PipelineCancelled)
    assert store.uploads == []


def test_cancelled_before_start_does_no_work_failure():
    token = threading.Event()
    token.set()
    moderator = FakeModerator()
    result = _pipeline(moderator).run(_request(), cancel_token=token)
    assert result.failure_kind == "Cancelled"
    assert moderator.calls == []


# Scenarios against moto-backed S3 and DynamoDB

def _content_safety(handler):
    client = ContentSafetyClient("https://moderation.test", "secret", transport=httpx.MockTransport(handler))
    return ContentModerator(client, StrictModerationPolicy())


def _clean(request):
    return httpx.Response(200, json={"categoriesAnalysis": [{"category": "Sexual", "severity": 0}]})


def _aws_pipeline(settings, moderator, repository=None):
    return PhotoPipeline(
        Validator(settings),
        ImageTransformer(settings),
        moderator,
        S3BlobStore(settings),
        repository or MetadataRepository(settings),
        settings=settings,
    )


def test_scenario_jpeg_with_location_success(aws_mock):
    raw = jpeg_bytes()
    result = _aws_pipeline(aws_mock, _content_safety(_clean)).run(_request(raw))

    assert result.ok, result.error
    photo = result.photo
    assert photo.mime_type == "image/webp"
    assert photo.processed_size < len(raw)
    s3 = boto3.client("s3", region_name=aws_mock.aws_region)
    stored = s3.get_object(Bucket=aws_mock.bucket_name, Key=photo.object_key)["Body"].read()
    assert b"AcmeCam" not in stored
    assert b"EXIF" not in stored
    assert photo.blob_url.endswith(photo.object_key)
    assert bucket_keys("pending/") == []
    assert MetadataRepository(aws_mock).get(photo.id) == photo


def test_scenario_explicit_content_blocked_failure(aws_mock):
    handler = lambda request: httpx.Response(
        200, json={"categoriesAnalysis": [{"category": "Sexual", "severity": 6}]}
    )
    result = _aws_pipeline(aws_mock, _content_safety(handler)).run(_request())

    assert result.failure_kind == "ModerationRejected"
    assert result.verdict.category is ContentCategory.EXPLICIT
    assert bucket_keys() == []


def test_scenario_moderation_timeout_failure(aws_mock):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    result = _aws_pipeline(aws_mock, _content_safety(handler)).run(_request())

    assert result.failure_kind == "ModerationUnavailable"
    assert result.error.retryable is True
    assert bucket_keys() == []
    assert MetadataRepository(aws_mock).list_for_owner("u1") == []


def test_scenario_db_insert_fails_after_upload_failure(aws_mock, monkeypatch):
    repo = MetadataRepository(aws_mock)

    def put_item(**kwargs):
        raise ClientError({"Error": {"Code": "InternalServerError", "Message": "db down"}}, "PutItem")
    monkeypatch.setattr(repo.table, "put_item", put_item)

    result = _aws_pipeline(aws_mock, _content_safety(_clean), repo).run(_request())

    assert result.failure_kind == "PersistenceError"
    assert result.photo is None
    orphan = result.error.orphan_key
    assert orphan in bucket_keys("photos/")
    pending = S3BlobStore(aws_mock).list_pending()
    assert [m["key"] for m in pending] == [orphan]
    assert pending[0]["correlation_id"] == result.correlation_id
    assert repo.list_for_owner("u1") == []


def test_quota_uses_stored_usage_failure(aws_mock, monkeypatch):
    monkeypatch.setattr(aws_mock, "storage_quota_bytes", 10_000)
    moderator = FakeModerator()
    pipeline = _aws_pipeline(aws_mock, moderator)

    first = pipeline.run(_request(png_bytes(size=(40, 40)), "image/png", "a.png"))
    assert first.ok
    used = first.photo.processed_size

    monkeypatch.setattr(aws_mock, "storage_quota_bytes", used + 50)
    second = pipeline.run(_request(png_bytes(size=(40, 40)), "image/png", "b.png"))
    assert second.failure_kind == "QuotaExceeded"
    assert len(moderator.calls) == 1
