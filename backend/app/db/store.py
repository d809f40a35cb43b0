"""
Persistence contract for the campaign engine.

Three logical tables carry all engine state: immutable campaign definitions,
mutable enrollments and the append-only action log. Engagement events are
kept per target so branch conditions can be re-evaluated after a restart.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from app.models.action_log import ActionLogEntry
from app.models.campaign import CampaignDefinition
from app.models.engagement import EngagementEvent
from app.models.enrollment import Enrollment


class ExecutionStore(ABC):

    # --- campaign definitions -------------------------------------------

    @abstractmethod
    async def save_definition(self, definition: CampaignDefinition) -> None:
        """Insert a new (campaign_id, version). Existing versions are never replaced."""

    @abstractmethod
    async def get_definition(self, campaign_id: str, version: int) -> Optional[CampaignDefinition]:
        ...

    @abstractmethod
    async def get_latest_definition(self, campaign_id: str) -> Optional[CampaignDefinition]:
        ...

    @abstractmethod
    async def list_campaigns(self, status: Optional[str] = None) -> List[CampaignDefinition]:
        """Latest version of every campaign, optionally filtered by status."""

    @abstractmethod
    async def set_campaign_status(self, campaign_id: str, status: str) -> int:
        """Set the lifecycle status on every version of a campaign. Returns versions touched."""

    # --- enrollments -----------------------------------------------------

    @abstractmethod
    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        """
        Insert an enrollment. Raises EnrollmentRejected when the pair
        (campaign_id, target_id) already has an open enrollment.
        """

    @abstractmethod
    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def get_latest_enrollment(self, campaign_id: str, target_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def list_enrollments_for_target(self, target_id: str, open_only: bool = False) -> List[Enrollment]:
        ...

    @abstractmethod
    async def list_open_enrollments(self, campaign_id: str) -> List[Enrollment]:
        ...

    @abstractmethod
    async def save_enrollment(self, enrollment: Enrollment, owner: Optional[str] = None) -> bool:
        """
        Persist the enrollment. Returns False, writing nothing, when the stored
        row is already terminal (e.g. cancelled while this copy was in flight),
        or when `owner` is given and no longer holds the row's lease.
        """

    @abstractmethod
    async def terminate_enrollment(
        self, enrollment_id: str, status: str, reason: Optional[str], now: datetime, owner: Optional[str] = None
    ) -> Optional[Enrollment]:
        """
        Atomically move an open enrollment to a terminal status.
        Returns the enrollment as it was before, or None if it was not open
        (or, with `owner`, if that worker lost the lease).
        """

    @abstractmethod
    async def find_due_enrollments(self, now: datetime, limit: Optional[int] = None) -> List[Enrollment]:
        """Open enrollments that are runnable now (pending/active, or suspended with due_at <= now)."""

    @abstractmethod
    async def acquire_lease(self, enrollment_id: str, owner: str, now: datetime, until: datetime) -> bool:
        ...

    @abstractmethod
    async def renew_lease(self, enrollment_id: str, owner: str, until: datetime) -> bool:
        """Extend a lease `owner` still holds on an open enrollment. False if it was taken or released."""

    @abstractmethod
    async def release_lease(self, enrollment_id: str, owner: str) -> None:
        ...

    # --- action log ------------------------------------------------------

    @abstractmethod
    async def append_action(self, entry: ActionLogEntry) -> ActionLogEntry:
        """Append and return the entry with its per-campaign sequence assigned."""

    @abstractmethod
    async def list_actions(
        self, campaign_id: Optional[str] = None, after_sequence: int = 0
    ) -> List[ActionLogEntry]:
        ...

    # --- engagement events -----------------------------------------------

    @abstractmethod
    async def add_event(self, event: EngagementEvent) -> bool:
        """Store the event. Returns False if its idempotency key is already stored."""

    @abstractmethod
    async def find_event_by_key(self, idempotency_key: str) -> Optional[EngagementEvent]:
        ...

    @abstractmethod
    async def find_events_near(
        self, target_id: str, event_type: str, occurred_at: datetime, window: timedelta
    ) -> List[EngagementEvent]:
        ...

    @abstractmethod
    async def list_events(
        self, target_id: str, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[EngagementEvent]:
        ...
