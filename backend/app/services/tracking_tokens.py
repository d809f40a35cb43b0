"""
Signed tracking links. A channel sender embeds these URLs in outgoing
content; the tracking endpoints turn a hit back into an engagement event.
"""
import logging
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

OPEN_EVENT = "email_opened"
CLICK_EVENT = "link_clicked"


class InvalidTrackingToken(Exception):
    pass


class TrackingTokens:

    def __init__(self, secret_key: str, public_url: str, max_age_seconds: int):
        self.serializer = URLSafeTimedSerializer(secret_key, salt="campaign-tracking")
        self.public_url = public_url.rstrip("/")
        self.max_age_seconds = max_age_seconds

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TrackingTokens":
        settings = settings or get_settings()
        return cls(settings.TRACKING_SECRET_KEY, settings.API_PUBLIC_URL, settings.TRACKING_TOKEN_MAX_AGE_SECONDS)

    def dumps(self, target_id: str, campaign_id: str, enrollment_id: Optional[str] = None, **extra: Any) -> str:
        payload = {"target_id": target_id, "campaign_id": campaign_id, "enrollment_id": enrollment_id, **extra}
        return self.serializer.dumps(payload)

    def loads(self, token: str) -> Dict[str, Any]:
        try:
            data = self.serializer.loads(token, max_age=self.max_age_seconds)
        except SignatureExpired:
            logger.warning("[TRACKING] Expired tracking token received")
            raise InvalidTrackingToken("expired")
        except BadSignature:
            logger.warning("[TRACKING] Invalid tracking token received")
            raise InvalidTrackingToken("bad-signature")
        if not isinstance(data, dict) or "target_id" not in data:
            raise InvalidTrackingToken("malformed")
        return data

    @staticmethod
    def _content_fields(content_ref: Optional[str], step_index: Optional[int]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if content_ref is not None:
            fields["content_ref"] = content_ref
        if step_index is not None:
            fields["step_index"] = step_index
        return fields

    def open_url(
        self,
        target_id: str,
        campaign_id: str,
        enrollment_id: Optional[str] = None,
        content_ref: Optional[str] = None,
        step_index: Optional[int] = None,
    ) -> str:
        token = self.dumps(target_id, campaign_id, enrollment_id, **self._content_fields(content_ref, step_index))
        return f"{self.public_url}/api/track/open?{urlencode({'token': token})}"

    def click_url(
        self,
        target_id: str,
        campaign_id: str,
        url: str,
        enrollment_id: Optional[str] = None,
        content_ref: Optional[str] = None,
        step_index: Optional[int] = None,
    ) -> str:
        token = self.dumps(
            target_id, campaign_id, enrollment_id, url=url, **self._content_fields(content_ref, step_index)
        )
        return f"{self.public_url}/api/track/click?{urlencode({'token': token})}"


@lru_cache()
def get_tracking_tokens() -> TrackingTokens:
    return TrackingTokens.from_settings()
