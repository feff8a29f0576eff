from typing import Optional, List
from pydantic import BaseModel

class ModerationSummary(BaseModel):
    decision: str
    category: str
    confidence: float

class UploadResponse(BaseModel):
    id: str
    url: str
    width: int
    height: int
    moderation: ModerationSummary
    pending_review: bool = False

class PhotoItem(BaseModel):
    id: str
    url: str
    thumbnail_url: Optional[str] = None
    width: int
    height: int
    mime_type: str
    original_size: int
    processed_size: int
    intent: str
    caption: Optional[str] = None
    moderation: ModerationSummary
    created_at: int

class ListResponse(BaseModel):
    count: int
    items: List[PhotoItem]

class ErrorDetail(BaseModel):
    error: str
    message: str
    retryable: bool
    correlation_id: Optional[str] = None
