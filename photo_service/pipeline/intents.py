from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class PhotoIntent(str, Enum):
    AVATAR = "AVATAR"
    COVER = "COVER"
    CAMPAIGN = "CAMPAIGN"
    VERIFICATION = "VERIFICATION"
    EVENT = "EVENT"
    GALLERY = "GALLERY"
    POST_MEDIA = "POST_MEDIA"


@dataclass(frozen=True)
class IntentProfile:
    """Per-intent knobs the pipeline reads; no intent gets its own code path."""
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    requires_review: bool = False

    @property
    def bounds(self) -> Optional[Tuple[int, int]]:
        if self.max_width is None or self.max_height is None:
            return None
        return (self.max_width, self.max_height)


INTENT_PROFILES = {
    PhotoIntent.AVATAR: IntentProfile(400, 400),
    PhotoIntent.COVER: IntentProfile(1200, 400),
    PhotoIntent.CAMPAIGN: IntentProfile(800, 1000, requires_review=True),
    PhotoIntent.VERIFICATION: IntentProfile(1024, 1024, requires_review=True),
    PhotoIntent.EVENT: IntentProfile(1200, 800),
    PhotoIntent.GALLERY: IntentProfile(1024, 1024),
    PhotoIntent.POST_MEDIA: IntentProfile(),
}


def profile_for(intent: PhotoIntent) -> IntentProfile:
    return INTENT_PROFILES[PhotoIntent(intent)]
