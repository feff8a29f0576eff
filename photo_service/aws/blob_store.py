"""S3 storage for sanitized photo bytes.

Every upload leaves a pending-confirmation marker next to the object
(``pending/<key>.json``). The pipeline clears it once the metadata record is
written. Markers that stay behind point the reconciliation job at blobs whose
record never landed.
"""
import json
import logging
import time
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..core.config import Settings, settings as default_settings
from ..core.errors import StorageError
from ..core.logs import bind
from .clients import s3 as s3_client_factory

logger = logging.getLogger(__name__)

PENDING_PREFIX = "pending/"


def marker_key_for(key: str) -> str:
    return f"{PENDING_PREFIX}{key}.json"


class S3BlobStore:
    def __init__(self, settings: Settings = default_settings, client=None):
        self.settings = settings
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = s3_client_factory(self.settings)
        return self._client

    @property
    def bucket(self) -> str:
        return self.settings.bucket_name

    def url_for(self, key: str) -> str:
        if self.settings.public_base_url:
            return f"{self.settings.public_base_url.rstrip('/')}/{key}"
        return f"https://{self.bucket}.s3.{self.settings.aws_region}.amazonaws.com/{key}"

    def upload(
        self,
        data: bytes,
        mime: str,
        key: str,
        *,
        owner_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        marker = {
            "key": key,
            "owner_id": owner_id,
            "correlation_id": correlation_id,
            "created_at": int(time.time()),
        }
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=marker_key_for(key),
                Body=json.dumps(marker).encode("utf-8"),
                ContentType="application/json",
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"could not write pending marker for {key}: {e}") from e

        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=mime,
                ContentDisposition="inline",
                CacheControl="public, max-age=31536000",
            )
        except (ClientError, BotoCoreError) as e:
            self._drop_marker(key, correlation_id)
            raise StorageError(f"upload of {key} failed: {e}") from e

        return self.url_for(key)

    def confirm(self, key: str) -> None:
        """Clear the pending marker once the metadata record exists."""
        try:
            self.client.delete_object(Bucket=self.bucket, Key=marker_key_for(key))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"could not clear pending marker for {key}: {e}") from e

    def list_pending(self) -> List[Dict[str, Any]]:
        """Markers still waiting for confirmation, oldest first."""
        items: List[Dict[str, Any]] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=PENDING_PREFIX):
            for obj in page.get("Contents", []):
                body = self.client.get_object(Bucket=self.bucket, Key=obj["Key"])["Body"].read()
                items.append(json.loads(body))
        items.sort(key=lambda m: m.get("created_at") or 0)
        return items

    def _drop_marker(self, key: str, correlation_id: Optional[str] = None) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=marker_key_for(key))
        except (ClientError, BotoCoreError):
            # Left for reconciliation; it will find no object behind the marker
            bind(logger, correlation_id).warning(
                "could not remove marker for failed upload %s", key, exc_info=True
            )
