"""Value types passed between the pipeline stages."""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, List, Dict, Any

from ..core import errors
from .intents import PhotoIntent


@dataclass(frozen=True)
class UploadRequest:
    """One user upload. Lives for a single pipeline run and is never stored."""
    data: bytes = field(repr=False)
    declared_mime: str
    declared_filename: Optional[str]
    owner_id: str
    intent: PhotoIntent = PhotoIntent.POST_MEDIA
    caption: Optional[str] = None


@dataclass(frozen=True)
class ValidationOutcome:
    ok: bool
    error_kind: Optional[str] = None
    message: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    detected_mime: Optional[str] = None

    def raise_for_error(self) -> None:
        if self.ok:
            return
        exc_cls = errors.VALIDATION_ERRORS.get(self.error_kind or "", errors.ValidationError)
        raise exc_cls(self.message or "invalid upload")


@dataclass(frozen=True)
class ProcessedImage:
    data: bytes = field(repr=False)
    mime_type: str
    width: int
    height: int
    original_size: int
    frame_count: int = 1

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return self.mime_type.split("/", 1)[1]


class Decision(str, Enum):
    APPROVE = "APPROVE"
    WARN = "WARN"
    BLOCK = "BLOCK"


class ContentCategory(str, Enum):
    CLEAN = "CLEAN"
    SUGGESTIVE = "SUGGESTIVE"
    GRAPHIC = "GRAPHIC"
    HATEFUL = "HATEFUL"
    EXPLICIT = "EXPLICIT"
    EXTREME_VIOLENCE = "EXTREME_VIOLENCE"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ModerationContext:
    owner_id: str
    photo_intent: PhotoIntent
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class ModerationVerdict:
    decision: Decision
    category: ContentCategory
    confidence: float
    latency_ms: int = 0
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision is not Decision.BLOCK

    def snapshot(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "category": self.category.value,
            "confidence": self.confidence,
            "latency_ms": self.latency_ms,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class StoredPhoto:
    id: str
    owner_id: str
    blob_url: str
    object_key: str
    original_size: int
    processed_size: int
    mime_type: str
    width: int
    height: int
    intent: PhotoIntent
    moderation: ModerationVerdict
    created_at: int
    caption: Optional[str] = None
    thumbnail_url: Optional[str] = None
    deleted_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["intent"] = self.intent.value
        out["moderation"] = self.moderation.snapshot()
        return out


class PipelineState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    TRANSFORMED = "TRANSFORMED"
    MODERATED = "MODERATED"
    STORED = "STORED"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"


@dataclass
class PipelineResult:
    correlation_id: str
    state: PipelineState = PipelineState.RECEIVED
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])
    photo: Optional[StoredPhoto] = None
    verdict: Optional[ModerationVerdict] = None
    error: Optional[errors.PhotoPipelineError] = None

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.PERSISTED

    @property
    def failure_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: errors.PhotoPipelineError) -> "PipelineResult":
        self.error = error
        self.advance(PipelineState.FAILED)
        return self
