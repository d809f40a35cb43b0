import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

ActionType = Literal[
    "enrolled",
    "step_entered",
    "executed",
    "send_failed",
    "wait_scheduled",
    "wait_elapsed",
    "branch_evaluated",
    "task_created",
    "task_resolved",
    "event_received",
    "status_changed",
]


class ActionLogEntry(BaseModel):
    """
    One meaningful transition of an enrollment. Append-only: entries are never
    updated or deleted, and every analytics rollup is derived from them.
    """
    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sequence: int = 0  # assigned by the store, contiguous per campaign
    campaign_id: str
    campaign_version: int
    enrollment_id: str
    target_id: str
    action_type: ActionType
    step_index: Optional[int] = None
    step_kind: Optional[str] = None
    channel: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    detail: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
