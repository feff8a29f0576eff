"""Content moderation against an external vision classification service.

The service speaks the Azure Content Safety image API: it takes a base64
image and returns a severity from 0 to 6 for each harm category. Severities
are mapped to APPROVE / WARN / BLOCK here. What happens when the service
cannot answer is decided by an injected policy, never by a silent fallback.
"""
import base64
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..core.config import Settings, settings as default_settings
from ..core.errors import ModerationInputRejected, ModerationServiceError
from ..core.logs import bind
from .types import ContentCategory, Decision, ModerationContext, ModerationVerdict, ProcessedImage

logger = logging.getLogger(__name__)

SEVERITY_WARN = 2
SEVERITY_BLOCK = 4
SEVERITY_MAX = 6

# Statuses the service returns for images it will not analyze
INPUT_REJECTED_STATUSES = (400, 413, 415)


class ContentSafetyClient:
    """Thin httpx wrapper around ``POST /contentsafety/image:analyze``."""

    def __init__(
        self,
        endpoint: Optional[str],
        api_key: Optional[str],
        *,
        api_version: str = "2023-10-01",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = (endpoint or "").rstrip("/")
        self.api_key = api_key
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContentSafetyClient":
        return cls(
            settings.moderation_endpoint,
            settings.moderation_api_key,
            api_version=settings.moderation_api_version,
            timeout=settings.moderation_timeout,
        )

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    def analyze(self, data: bytes) -> Dict[str, Any]:
        """POST the image and return the parsed analysis.

        ``timeout`` bounds the whole call, not just each read.
        """
        if not self.configured:
            raise ModerationServiceError("moderation service not configured")
        body = {"image": {"content": base64.b64encode(data).decode("ascii")}}
        deadline = time.monotonic() + self.timeout
        chunks = []
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                with client.stream(
                    "POST",
                    f"{self.endpoint}/contentsafety/image:analyze",
                    params={"api-version": self.api_version},
                    headers={"Ocp-Apim-Subscription-Key": self.api_key},
                    json=body,
                ) as resp:
                    if resp.status_code in INPUT_REJECTED_STATUSES:
                        raise ModerationInputRejected(
                            f"moderation service refused the image ({resp.status_code})"
                        )
                    resp.raise_for_status()
                    for chunk in resp.iter_bytes():
                        chunks.append(chunk)
                        if time.monotonic() > deadline:
                            raise ModerationServiceError(
                                f"moderation response not complete after {self.timeout}s"
                            )
            payload = json.loads(b"".join(chunks))
        except httpx.TimeoutException as e:
            raise ModerationServiceError(f"moderation request timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise ModerationServiceError(f"moderation service returned {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ModerationServiceError(f"moderation request failed: {e}") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("categoriesAnalysis"), list):
            raise ModerationServiceError("moderation response missing categoriesAnalysis")
        return payload


def verdict_from_analysis(payload: Dict[str, Any], latency_ms: int = 0) -> ModerationVerdict:
    severities: Dict[str, int] = {}
    for item in payload.get("categoriesAnalysis", []):
        try:
            severities[str(item["category"])] = int(item.get("severity") or 0)
        except (KeyError, TypeError, ValueError) as e:
            raise ModerationServiceError(f"malformed category entry: {item!r}") from e

    sexual = severities.get("Sexual", 0)
    violence = max(severities.get("Violence", 0), severities.get("SelfHarm", 0))
    hate = severities.get("Hate", 0)

    def verdict(decision, category, severity, reason):
        return ModerationVerdict(decision, category, round(severity / SEVERITY_MAX, 4), latency_ms, reason)

    if sexual >= SEVERITY_BLOCK:
        return verdict(Decision.BLOCK, ContentCategory.EXPLICIT, sexual, "Explicit sexual content")
    if violence >= SEVERITY_MAX:
        return verdict(Decision.BLOCK, ContentCategory.EXTREME_VIOLENCE, violence, "Extreme violence")
    if sexual >= SEVERITY_WARN:
        return verdict(Decision.WARN, ContentCategory.SUGGESTIVE, sexual, "Suggestive content")
    if violence >= SEVERITY_WARN:
        return verdict(Decision.WARN, ContentCategory.GRAPHIC, violence, "Graphic content")
    if hate >= SEVERITY_WARN:
        return verdict(Decision.WARN, ContentCategory.HATEFUL, hate, "Potentially hateful content")

    worst = max(severities.values(), default=0)
    return ModerationVerdict(
        Decision.APPROVE, ContentCategory.CLEAN, round(1 - worst / SEVERITY_MAX, 4), latency_ms,
        "Content passed safety checks",
    )


class StrictModerationPolicy:
    """Service outages fail the upload. The default everywhere."""
    name = "strict"

    def on_unavailable(self, error: ModerationServiceError, latency_ms: int,
                       context: ModerationContext) -> ModerationVerdict:
        raise error


class PermissiveModerationPolicy:
    """Let uploads through as WARN when the service is down. Local development only."""
    name = "permissive"

    def on_unavailable(self, error: ModerationServiceError, latency_ms: int,
                       context: ModerationContext) -> ModerationVerdict:
        bind(logger, context.correlation_id).warning(
            "moderation unavailable, permissive policy marks upload WARN: %s", error
        )
        return ModerationVerdict(
            Decision.WARN, ContentCategory.UNKNOWN, 0.0, latency_ms, f"moderation unavailable: {error}"
        )


def policy_from_settings(settings: Settings):
    mode = (settings.moderation_mode or "strict").lower()
    if mode == "strict":
        return StrictModerationPolicy()
    if mode == "permissive":
        if settings.is_production:
            raise ValueError("permissive moderation is not allowed in production")
        return PermissiveModerationPolicy()
    raise ValueError(f"unknown moderation mode: {settings.moderation_mode!r}")


class ContentModerator:
    def __init__(self, client: ContentSafetyClient, policy=None):
        self.client = client
        self.policy = policy or StrictModerationPolicy()

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "ContentModerator":
        return cls(ContentSafetyClient.from_settings(settings), policy_from_settings(settings))

    def moderate(self, processed: ProcessedImage, context: ModerationContext) -> ModerationVerdict:
        log = bind(logger, context.correlation_id)
        start = time.monotonic()
        try:
            payload = self.client.analyze(processed.data)
            result = verdict_from_analysis(payload, _elapsed_ms(start))
        except ModerationServiceError as e:
            log.error(
                "moderation service failure owner=%s intent=%s policy=%s: %s",
                context.owner_id, context.photo_intent.value, self.policy.name, e,
            )
            return self.policy.on_unavailable(e, _elapsed_ms(start), context)

        if result.decision is Decision.BLOCK:
            log.warning(
                "moderation blocked upload owner=%s category=%s confidence=%.2f",
                context.owner_id, result.category.value, result.confidence,
            )
        return result


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
