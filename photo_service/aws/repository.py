"""DynamoDB persistence for completed uploads.

Items are keyed by ``photo_id`` with a ``by_owner_created`` GSI
(owner_id, created_at) for per-owner listing and quota accounting.
"""
import time
from decimal import Decimal
from typing import Optional, List, Dict, Any

from boto3.dynamodb.conditions import Key, Attr
from botocore.exceptions import BotoCoreError, ClientError

from ..core.config import Settings, settings as default_settings
from ..core.errors import PersistenceError
from ..pipeline.intents import PhotoIntent
from ..pipeline.types import (
    ContentCategory,
    Decision,
    ModerationVerdict,
    ProcessedImage,
    StoredPhoto,
)
from .clients import dynamodb_table as dynamodb_table_factory

OWNER_INDEX = "by_owner_created"


class MetadataRepository:
    def __init__(self, settings: Settings = default_settings, table=None):
        self.settings = settings
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = dynamodb_table_factory(self.settings)
        return self._table

    def persist(
        self,
        owner_id: str,
        blob_url: str,
        processed: ProcessedImage,
        verdict: ModerationVerdict,
        *,
        photo_id: str,
        object_key: str,
        intent: PhotoIntent = PhotoIntent.POST_MEDIA,
        caption: Optional[str] = None,
    ) -> StoredPhoto:
        if verdict.decision is Decision.BLOCK:
            raise PersistenceError("refusing to persist a blocked photo", orphan_key=object_key)

        photo = StoredPhoto(
            id=photo_id,
            owner_id=owner_id,
            blob_url=blob_url,
            object_key=object_key,
            original_size=processed.original_size,
            processed_size=processed.size,
            mime_type=processed.mime_type,
            width=processed.width,
            height=processed.height,
            intent=PhotoIntent(intent),
            moderation=verdict,
            created_at=int(time.time()),
            caption=caption,
        )
        try:
            self.table.put_item(
                Item=_to_item(photo),
                ConditionExpression=Attr("photo_id").not_exists(),
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"insert of photo {photo_id} failed: {e}", orphan_key=object_key) from e
        return photo

    def get(self, photo_id: str) -> Optional[StoredPhoto]:
        item = self.table.get_item(Key={"photo_id": photo_id}).get("Item")
        return _from_item(item) if item else None

    def list_for_owner(self, owner_id: str, include_deleted: bool = False) -> List[StoredPhoto]:
        return [_from_item(i) for i in self._query_owner(owner_id, include_deleted)]

    def storage_usage(self, owner_id: str) -> int:
        """Bytes currently held by the owner's live photos."""
        return sum(int(i.get("processed_size", 0)) for i in self._query_owner(owner_id, False))

    def soft_delete(self, photo_id: str, owner_id: str) -> StoredPhoto:
        item = self.table.get_item(Key={"photo_id": photo_id}).get("Item")
        if not item or item.get("deleted_at") is not None:
            raise KeyError("not_found")
        if item["owner_id"] != owner_id:
            raise PermissionError("not_owner")

        deleted_at = int(time.time())
        try:
            self.table.update_item(
                Key={"photo_id": photo_id},
                UpdateExpression="SET deleted_at = :t",
                ConditionExpression=Attr("owner_id").eq(owner_id) & Attr("deleted_at").not_exists(),
                ExpressionAttributeValues={":t": deleted_at},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise KeyError("not_found") from e
            raise PersistenceError(f"soft delete of photo {photo_id} failed: {e}") from e
        item["deleted_at"] = deleted_at
        return _from_item(item)

    def _query_owner(self, owner_id: str, include_deleted: bool) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        exclusive_start_key = None
        while True:
            params: Dict[str, Any] = {
                "IndexName": OWNER_INDEX,
                "KeyConditionExpression": Key("owner_id").eq(owner_id),
                "ScanIndexForward": False,
            }
            if not include_deleted:
                params["FilterExpression"] = Attr("deleted_at").not_exists()
            if exclusive_start_key is not None:
                params["ExclusiveStartKey"] = exclusive_start_key

            resp = self.table.query(**params)
            items.extend(resp.get("Items", []))
            exclusive_start_key = resp.get("LastEvaluatedKey")
            if not exclusive_start_key:
                break
        return items


def _to_item(photo: StoredPhoto) -> Dict[str, Any]:
    v = photo.moderation
    item: Dict[str, Any] = {
        "photo_id": photo.id,
        "owner_id": photo.owner_id,
        "created_at": photo.created_at,
        "blob_url": photo.blob_url,
        "object_key": photo.object_key,
        "original_size": photo.original_size,
        "processed_size": photo.processed_size,
        "mime_type": photo.mime_type,
        "width": photo.width,
        "height": photo.height,
        "intent": photo.intent.value,
        # DynamoDB rejects floats
        "moderation": {
            "decision": v.decision.value,
            "category": v.category.value,
            "confidence": Decimal(str(v.confidence)),
            "latency_ms": v.latency_ms,
        },
    }
    if v.reason is not None:
        item["moderation"]["reason"] = v.reason
    if photo.caption is not None:
        item["caption"] = photo.caption
    if photo.thumbnail_url is not None:
        item["thumbnail_url"] = photo.thumbnail_url
    return item


def _from_item(item: Dict[str, Any]) -> StoredPhoto:
    m = item.get("moderation", {})
    deleted_at = item.get("deleted_at")
    return StoredPhoto(
        id=item["photo_id"],
        owner_id=item["owner_id"],
        blob_url=item["blob_url"],
        object_key=item["object_key"],
        original_size=int(item["original_size"]),
        processed_size=int(item["processed_size"]),
        mime_type=item["mime_type"],
        width=int(item["width"]),
        height=int(item["height"]),
        intent=PhotoIntent(item.get("intent", PhotoIntent.POST_MEDIA.value)),
        moderation=ModerationVerdict(
            decision=Decision(m.get("decision", Decision.APPROVE.value)),
            category=ContentCategory(m.get("category", ContentCategory.UNKNOWN.value)),
            confidence=float(m.get("confidence", 0)),
            latency_ms=int(m.get("latency_ms", 0)),
            reason=m.get("reason"),
        ),
        created_at=int(item["created_at"]),
        caption=item.get("caption"),
        thumbnail_url=item.get("thumbnail_url"),
        deleted_at=int(deleted_at) if deleted_at is not None else None,
    )
