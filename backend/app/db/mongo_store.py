"""
MongoDB implementation of the execution store (Beanie documents on Motor).

Reads go through Beanie; conditional writes (lease, terminate, guarded save,
sequence counters) use the Motor collection directly so each one is a single
atomic server-side operation.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import EnrollmentRejected
from app.db.documents import (
    ActionLogDocument,
    CampaignDefinitionDocument,
    CounterDocument,
    EngagementEventDocument,
    EnrollmentDocument,
    open_key_for,
)
from app.db.store import ExecutionStore
from app.models.action_log import ActionLogEntry
from app.models.campaign import CampaignDefinition
from app.models.engagement import EngagementEvent
from app.models.enrollment import OPEN_STATUSES, SUSPENDED_STATUSES, TERMINAL_STATUSES, Enrollment

logger = logging.getLogger(__name__)

RAW_EXCLUDE = ("_id", "revision_id", "open_key")


def _enrollment_from_raw(raw: Dict[str, Any]) -> Enrollment:
    return Enrollment.model_validate({k: v for k, v in raw.items() if k not in RAW_EXCLUDE})


def _enrollment_to_raw(enrollment: Enrollment) -> Dict[str, Any]:
    data = enrollment.model_dump()
    data["open_key"] = open_key_for(enrollment)
    return data


class MongoStore(ExecutionStore):

    # --- campaign definitions -------------------------------------------

    async def save_definition(self, definition: CampaignDefinition) -> None:
        try:
            await CampaignDefinitionDocument(**definition.model_dump()).insert()
        except DuplicateKeyError:
            raise ValueError(f"Campaign {definition.campaign_id} version {definition.version} already exists")

    async def get_definition(self, campaign_id: str, version: int) -> Optional[CampaignDefinition]:
        doc = await CampaignDefinitionDocument.find_one({"campaign_id": campaign_id, "version": version})
        return doc.to_domain() if doc else None

    async def get_latest_definition(self, campaign_id: str) -> Optional[CampaignDefinition]:
        doc = await CampaignDefinitionDocument.find({"campaign_id": campaign_id}).sort("-version").first_or_none()
        return doc.to_domain() if doc else None

    async def list_campaigns(self, status: Optional[str] = None) -> List[CampaignDefinition]:
        query: Dict[str, Any] = {"status": status} if status else {}
        docs = await CampaignDefinitionDocument.find(query).sort("+campaign_id", "-version").to_list()
        latest: Dict[str, CampaignDefinition] = {}
        for doc in docs:
            if doc.campaign_id not in latest:
                latest[doc.campaign_id] = doc.to_domain()
        return list(latest.values())

    async def set_campaign_status(self, campaign_id: str, status: str) -> int:
        result = await CampaignDefinitionDocument.get_motor_collection().update_many(
            {"campaign_id": campaign_id}, {"$set": {"status": status}}
        )
        return result.matched_count

    # --- enrollments -----------------------------------------------------

    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        try:
            await EnrollmentDocument.from_domain(enrollment).insert()
        except DuplicateKeyError:
            raise EnrollmentRejected(
                f"Target {enrollment.target_id} already has an open enrollment in campaign {enrollment.campaign_id}",
                reason="already-enrolled",
            )
        return enrollment

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        doc = await EnrollmentDocument.find_one({"enrollment_id": enrollment_id})
        return doc.to_domain() if doc else None

    async def get_latest_enrollment(self, campaign_id: str, target_id: str) -> Optional[Enrollment]:
        doc = await EnrollmentDocument.find(
            {"campaign_id": campaign_id, "target_id": target_id}
        ).sort("-entered_at").first_or_none()
        return doc.to_domain() if doc else None

    async def list_enrollments_for_target(self, target_id: str, open_only: bool = False) -> List[Enrollment]:
        query: Dict[str, Any] = {"target_id": target_id}
        if open_only:
            query["status"] = {"$in": sorted(OPEN_STATUSES)}
        docs = await EnrollmentDocument.find(query).to_list()
        return [doc.to_domain() for doc in docs]

    async def list_open_enrollments(self, campaign_id: str) -> List[Enrollment]:
        docs = await EnrollmentDocument.find(
            {"campaign_id": campaign_id, "status": {"$in": sorted(OPEN_STATUSES)}}
        ).to_list()
        return [doc.to_domain() for doc in docs]

    async def save_enrollment(self, enrollment: Enrollment, owner: Optional[str] = None) -> bool:
        query: Dict[str, Any] = {"enrollment_id": enrollment.enrollment_id, "status": {"$nin": sorted(TERMINAL_STATUSES)}}
        if owner is not None:
            query["lease_owner"] = owner
        result = await EnrollmentDocument.get_motor_collection().replace_one(query, _enrollment_to_raw(enrollment))
        return result.matched_count == 1

    async def terminate_enrollment(
        self, enrollment_id: str, status: str, reason: Optional[str], now: datetime, owner: Optional[str] = None
    ) -> Optional[Enrollment]:
        query: Dict[str, Any] = {"enrollment_id": enrollment_id, "status": {"$in": sorted(OPEN_STATUSES)}}
        if owner is not None:
            query["lease_owner"] = owner
        raw = await EnrollmentDocument.get_motor_collection().find_one_and_update(
            query,
            {
                "$set": {
                    "status": status,
                    "failure_reason": reason,
                    "due_at": None,
                    "last_transition_at": now,
                    "completed_at": now,
                    "open_key": None,
                }
            },
            return_document=ReturnDocument.BEFORE,
        )
        return _enrollment_from_raw(raw) if raw else None

    async def find_due_enrollments(self, now: datetime, limit: Optional[int] = None) -> List[Enrollment]:
        query = EnrollmentDocument.find(
            {
                "$or": [
                    {"status": {"$in": ["pending", "active"]}},
                    {"status": {"$in": sorted(SUSPENDED_STATUSES)}, "due_at": {"$lte": now}},
                ]
            }
        ).sort("+due_at", "+last_transition_at")
        if limit is not None:
            query = query.limit(limit)
        docs = await query.to_list()
        return [doc.to_domain() for doc in docs]

    async def acquire_lease(self, enrollment_id: str, owner: str, now: datetime, until: datetime) -> bool:
        result = await EnrollmentDocument.get_motor_collection().update_one(
            {
                "enrollment_id": enrollment_id,
                "$or": [
                    {"lease_owner": None},
                    {"lease_owner": owner},
                    {"lease_until": {"$lte": now}},
                ],
            },
            {"$set": {"lease_owner": owner, "lease_until": until}},
        )
        return result.matched_count == 1

    async def renew_lease(self, enrollment_id: str, owner: str, until: datetime) -> bool:
        result = await EnrollmentDocument.get_motor_collection().update_one(
            {"enrollment_id": enrollment_id, "lease_owner": owner, "status": {"$in": sorted(OPEN_STATUSES)}},
            {"$set": {"lease_until": until}},
        )
        return result.matched_count == 1

    async def release_lease(self, enrollment_id: str, owner: str) -> None:
        await EnrollmentDocument.get_motor_collection().update_one(
            {"enrollment_id": enrollment_id, "lease_owner": owner},
            {"$set": {"lease_owner": None, "lease_until": None}},
        )

    # --- action log ------------------------------------------------------

    async def _next_sequence(self, campaign_id: str) -> int:
        counter = await CounterDocument.get_motor_collection().find_one_and_update(
            {"name": f"action_log:{campaign_id}"},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["value"]

    async def append_action(self, entry: ActionLogEntry) -> ActionLogEntry:
        stored = entry.model_copy(update={"sequence": await self._next_sequence(entry.campaign_id)})
        await ActionLogDocument.get_motor_collection().insert_one(stored.model_dump())
        return stored

    async def list_actions(
        self, campaign_id: Optional[str] = None, after_sequence: int = 0
    ) -> List[ActionLogEntry]:
        query: Dict[str, Any] = {}
        if campaign_id is not None:
            query = {"campaign_id": campaign_id, "sequence": {"$gt": after_sequence}}
        docs = await ActionLogDocument.find(query).sort("+campaign_id", "+sequence").to_list()
        return [doc.to_domain() for doc in docs]

    # --- engagement events -----------------------------------------------

    async def add_event(self, event: EngagementEvent) -> bool:
        try:
            await EngagementEventDocument.get_motor_collection().insert_one(event.model_dump())
        except DuplicateKeyError:
            logger.info(f"[EVENT] Idempotency key {event.idempotency_key} already stored")
            return False
        return True

    async def find_event_by_key(self, idempotency_key: str) -> Optional[EngagementEvent]:
        doc = await EngagementEventDocument.find_one({"idempotency_key": idempotency_key})
        return doc.to_domain() if doc else None

    async def find_events_near(
        self, target_id: str, event_type: str, occurred_at: datetime, window: timedelta
    ) -> List[EngagementEvent]:
        docs = await EngagementEventDocument.find(
            {
                "target_id": target_id,
                "event_type": event_type,
                "occurred_at": {"$gte": occurred_at - window, "$lte": occurred_at + window},
            }
        ).to_list()
        return [doc.to_domain() for doc in docs]

    async def list_events(
        self, target_id: str, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[EngagementEvent]:
        query: Dict[str, Any] = {"target_id": target_id}
        window: Dict[str, Any] = {}
        if since is not None:
            window["$gte"] = since
        if until is not None:
            window["$lte"] = until
        if window:
            query["occurred_at"] = window
        docs = await EngagementEventDocument.find(query).sort("+occurred_at").to_list()
        return [doc.to_domain() for doc in docs]
