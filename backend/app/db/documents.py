from typing import Optional

from beanie import Document
from pymongo import ASCENDING, DESCENDING, IndexModel

from app.models.action_log import ActionLogEntry
from app.models.campaign import CampaignDefinition
from app.models.engagement import EngagementEvent
from app.models.enrollment import Enrollment

STORAGE_EXCLUDE = {"id", "revision_id", "open_key"}


class CampaignDefinitionDocument(Document, CampaignDefinition):
    class Settings:
        name = "campaign_definitions"
        indexes = [
            IndexModel([("campaign_id", ASCENDING), ("version", ASCENDING)], unique=True),
            IndexModel([("status", ASCENDING)]),
        ]

    def to_domain(self) -> CampaignDefinition:
        return CampaignDefinition.model_validate(self.model_dump(exclude=STORAGE_EXCLUDE))


class EnrollmentDocument(Document, Enrollment):
    # "<campaign_id>:<target_id>" while open, None once terminal; the partial
    # unique index on it enforces one open enrollment per pair.
    open_key: Optional[str] = None

    class Settings:
        name = "enrollments"
        indexes = [
            IndexModel([("enrollment_id", ASCENDING)], unique=True),
            IndexModel(
                [("open_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"open_key": {"$type": "string"}},
            ),
            IndexModel([("status", ASCENDING), ("due_at", ASCENDING)]),
            IndexModel([("target_id", ASCENDING)]),
            IndexModel([("campaign_id", ASCENDING), ("target_id", ASCENDING), ("entered_at", DESCENDING)]),
        ]

    @classmethod
    def from_domain(cls, enrollment: Enrollment) -> "EnrollmentDocument":
        data = enrollment.model_dump()
        data["open_key"] = open_key_for(enrollment)
        return cls(**data)

    def to_domain(self) -> Enrollment:
        return Enrollment.model_validate(self.model_dump(exclude=STORAGE_EXCLUDE))


class ActionLogDocument(Document, ActionLogEntry):
    class Settings:
        name = "action_log"
        indexes = [
            IndexModel([("campaign_id", ASCENDING), ("sequence", ASCENDING)], unique=True),
            IndexModel([("enrollment_id", ASCENDING)]),
        ]

    def to_domain(self) -> ActionLogEntry:
        return ActionLogEntry.model_validate(self.model_dump(exclude=STORAGE_EXCLUDE))


class EngagementEventDocument(Document, EngagementEvent):
    class Settings:
        name = "engagement_events"
        indexes = [
            IndexModel([("target_id", ASCENDING), ("occurred_at", ASCENDING)]),
            IndexModel(
                [("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
        ]

    def to_domain(self) -> EngagementEvent:
        return EngagementEvent.model_validate(self.model_dump(exclude=STORAGE_EXCLUDE))


class CounterDocument(Document):
    name: str
    value: int = 0

    class Settings:
        name = "counters"
        indexes = [IndexModel([("name", ASCENDING)], unique=True)]


def open_key_for(enrollment: Enrollment) -> Optional[str]:
    if enrollment.is_open:
        return f"{enrollment.campaign_id}:{enrollment.target_id}"
    return None


DOCUMENT_MODELS = [
    CampaignDefinitionDocument,
    EnrollmentDocument,
    ActionLogDocument,
    EngagementEventDocument,
    CounterDocument,
]
