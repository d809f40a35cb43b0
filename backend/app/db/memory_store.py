"""
In-memory implementation of the execution store.

Useful for tests, dry runs and single-process deployments. Every read and
write goes through a deep copy so callers never share state with the store,
which mirrors how the Mongo store behaves.
"""
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from app.core.exceptions import EnrollmentRejected
from app.db.store import ExecutionStore
from app.models.action_log import ActionLogEntry
from app.models.campaign import CampaignDefinition
from app.models.engagement import EngagementEvent
from app.models.enrollment import SUSPENDED_STATUSES, TERMINAL_STATUSES, Enrollment


class InMemoryStore(ExecutionStore):

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, int], CampaignDefinition] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._actions: List[ActionLogEntry] = []
        self._sequences: Dict[str, int] = defaultdict(int)
        self._events: List[EngagementEvent] = []

    # --- campaign definitions -------------------------------------------

    async def save_definition(self, definition: CampaignDefinition) -> None:
        key = (definition.campaign_id, definition.version)
        if key in self._definitions:
            raise ValueError(f"Campaign {key[0]} version {key[1]} already exists")
        self._definitions[key] = definition.model_copy(deep=True)

    async def get_definition(self, campaign_id: str, version: int) -> Optional[CampaignDefinition]:
        definition = self._definitions.get((campaign_id, version))
        return definition.model_copy(deep=True) if definition else None

    async def get_latest_definition(self, campaign_id: str) -> Optional[CampaignDefinition]:
        versions = [d for (cid, _), d in self._definitions.items() if cid == campaign_id]
        if not versions:
            return None
        return max(versions, key=lambda d: d.version).model_copy(deep=True)

    async def list_campaigns(self, status: Optional[str] = None) -> List[CampaignDefinition]:
        latest: Dict[str, CampaignDefinition] = {}
        for (campaign_id, version), definition in self._definitions.items():
            if campaign_id not in latest or version > latest[campaign_id].version:
                latest[campaign_id] = definition
        return [
            d.model_copy(deep=True)
            for d in latest.values()
            if status is None or d.status == status
        ]

    async def set_campaign_status(self, campaign_id: str, status: str) -> int:
        touched = 0
        for (cid, _), definition in self._definitions.items():
            if cid == campaign_id:
                definition.status = status
                touched += 1
        return touched

    # --- enrollments -----------------------------------------------------

    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        for existing in self._enrollments.values():
            if (
                existing.campaign_id == enrollment.campaign_id
                and existing.target_id == enrollment.target_id
                and existing.is_open
            ):
                raise EnrollmentRejected(
                    f"Target {enrollment.target_id} already has an open enrollment in campaign {enrollment.campaign_id}",
                    reason="already-enrolled",
                    details={"enrollment_id": existing.enrollment_id},
                )
        self._enrollments[enrollment.enrollment_id] = enrollment.model_copy(deep=True)
        return enrollment

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def get_latest_enrollment(self, campaign_id: str, target_id: str) -> Optional[Enrollment]:
        matches = [
            e for e in self._enrollments.values()
            if e.campaign_id == campaign_id and e.target_id == target_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda e: e.entered_at).model_copy(deep=True)

    async def list_enrollments_for_target(self, target_id: str, open_only: bool = False) -> List[Enrollment]:
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if e.target_id == target_id and (not open_only or e.is_open)
        ]

    async def list_open_enrollments(self, campaign_id: str) -> List[Enrollment]:
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if e.campaign_id == campaign_id and e.is_open
        ]

    async def save_enrollment(self, enrollment: Enrollment, owner: Optional[str] = None) -> bool:
        stored = self._enrollments.get(enrollment.enrollment_id)
        if stored is not None and stored.status in TERMINAL_STATUSES:
            return False
        if owner is not None and (stored is None or stored.lease_owner != owner):
            return False
        self._enrollments[enrollment.enrollment_id] = enrollment.model_copy(deep=True)
        return True

    async def terminate_enrollment(
        self, enrollment_id: str, status: str, reason: Optional[str], now: datetime, owner: Optional[str] = None
    ) -> Optional[Enrollment]:
        stored = self._enrollments.get(enrollment_id)
        if stored is None or not stored.is_open:
            return None
        if owner is not None and stored.lease_owner != owner:
            return None
        before = stored.model_copy(deep=True)
        stored.status = status
        stored.failure_reason = reason
        stored.due_at = None
        stored.last_transition_at = now
        stored.completed_at = now
        return before

    async def find_due_enrollments(self, now: datetime, limit: Optional[int] = None) -> List[Enrollment]:
        due = []
        for enrollment in self._enrollments.values():
            if enrollment.status in ("pending", "active"):
                due.append(enrollment)
            elif enrollment.status in SUSPENDED_STATUSES and enrollment.due_at is not None and enrollment.due_at <= now:
                due.append(enrollment)
        due.sort(key=lambda e: e.due_at or e.last_transition_at)
        if limit is not None:
            due = due[:limit]
        return [e.model_copy(deep=True) for e in due]

    async def acquire_lease(self, enrollment_id: str, owner: str, now: datetime, until: datetime) -> bool:
        stored = self._enrollments.get(enrollment_id)
        if stored is None:
            return False
        if stored.lease_owner not in (None, owner) and stored.lease_until is not None and stored.lease_until > now:
            return False
        stored.lease_owner = owner
        stored.lease_until = until
        return True

    async def renew_lease(self, enrollment_id: str, owner: str, until: datetime) -> bool:
        stored = self._enrollments.get(enrollment_id)
        if stored is None or not stored.is_open or stored.lease_owner != owner:
            return False
        stored.lease_until = until
        return True

    async def release_lease(self, enrollment_id: str, owner: str) -> None:
        stored = self._enrollments.get(enrollment_id)
        if stored is not None and stored.lease_owner == owner:
            stored.lease_owner = None
            stored.lease_until = None

    # --- action log ------------------------------------------------------

    async def append_action(self, entry: ActionLogEntry) -> ActionLogEntry:
        self._sequences[entry.campaign_id] += 1
        stored = entry.model_copy(deep=True, update={"sequence": self._sequences[entry.campaign_id]})
        self._actions.append(stored)
        return stored.model_copy(deep=True)

    async def list_actions(
        self, campaign_id: Optional[str] = None, after_sequence: int = 0
    ) -> List[ActionLogEntry]:
        if campaign_id is None:
            return [a.model_copy(deep=True) for a in self._actions]
        selected = [
            a for a in self._actions
            if a.campaign_id == campaign_id and a.sequence > after_sequence
        ]
        selected.sort(key=lambda a: a.sequence)
        return [a.model_copy(deep=True) for a in selected]

    # --- engagement events -----------------------------------------------

    async def add_event(self, event: EngagementEvent) -> bool:
        if event.idempotency_key is not None and await self.find_event_by_key(event.idempotency_key):
            return False
        self._events.append(event.model_copy(deep=True))
        return True

    async def find_event_by_key(self, idempotency_key: str) -> Optional[EngagementEvent]:
        for event in self._events:
            if event.idempotency_key == idempotency_key:
                return event.model_copy(deep=True)
        return None

    async def find_events_near(
        self, target_id: str, event_type: str, occurred_at: datetime, window: timedelta
    ) -> List[EngagementEvent]:
        return [
            e.model_copy(deep=True)
            for e in self._events
            if e.target_id == target_id
            and e.event_type == event_type
            and abs(e.occurred_at - occurred_at) <= window
        ]

    async def list_events(
        self, target_id: str, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[EngagementEvent]:
        selected = [
            e for e in self._events
            if e.target_id == target_id
            and (since is None or e.occurred_at >= since)
            and (until is None or e.occurred_at <= until)
        ]
        selected.sort(key=lambda e: e.occurred_at)
        return [e.model_copy(deep=True) for e in selected]
