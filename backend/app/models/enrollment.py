import uuid
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field

EnrollmentStatus = Literal[
    "pending",
    "active",
    "waiting",
    "blocked-on-event",
    "blocked-on-task",
    "completed",
    "failed",
    "cancelled",
]

TERMINAL_STATUSES: FrozenSet[str] = frozenset({"completed", "failed", "cancelled"})
SUSPENDED_STATUSES: FrozenSet[str] = frozenset({"waiting", "blocked-on-event", "blocked-on-task"})
OPEN_STATUSES: FrozenSet[str] = frozenset({"pending", "active"}) | SUSPENDED_STATUSES

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"active", "failed", "cancelled"}),
    "active": frozenset({"waiting", "blocked-on-event", "blocked-on-task"}) | TERMINAL_STATUSES,
    "waiting": frozenset({"active", "failed", "cancelled"}),
    "blocked-on-event": frozenset({"active", "failed", "cancelled"}),
    "blocked-on-task": frozenset({"active", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


class BranchRecord(BaseModel):
    step_index: int
    result: bool
    at: datetime


class Enrollment(BaseModel):
    """Execution state of one target running through one campaign version."""
    enrollment_id: str = Field(default_factory=lambda: f"enr_{uuid.uuid4().hex}")
    campaign_id: str
    campaign_version: int
    target_id: str = Field(..., examples=["lead_8841"])
    status: EnrollmentStatus = "pending"
    current_step_index: int = 0
    due_at: Optional[datetime] = None
    entered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_transition_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    branch_history: List[BranchRecord] = Field(default_factory=list)
    send_attempts: int = 0
    failure_reason: Optional[str] = None
    enrolled_via: str = "manual"
    lease_owner: Optional[str] = None
    lease_until: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES
