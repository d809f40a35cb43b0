import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EngagementEvent(BaseModel):
    """An engagement signal (open, click, reply, call outcome) for one target."""
    event_id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    target_id: str
    event_type: str = Field(..., examples=["email_opened"])
    occurred_at: datetime
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
