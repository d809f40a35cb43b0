import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from app.core.exceptions import EnrollmentRejected
from app.db.store import ExecutionStore
from app.models.campaign import CampaignDefinition, TriggerDefinition
from app.models.enrollment import Enrollment

logger = logging.getLogger(__name__)

# (definition, target_id, via, now, entered_at)
EnrollFn = Callable[[CampaignDefinition, str, str, datetime, Optional[datetime]], Awaitable[Enrollment]]


@dataclass
class TriggerResult:
    kind: str
    target_id: str
    enrolled: Dict[str, str] = field(default_factory=dict)  # campaign_id -> enrollment_id
    skipped: Dict[str, str] = field(default_factory=dict)  # campaign_id -> reason


def trigger_matches(
    trigger: TriggerDefinition, kind: str, event_type: Optional[str] = None, inactive_days: Optional[int] = None
) -> bool:
    if trigger.kind != kind:
        return False
    if kind == "event":
        return trigger.event_type == event_type
    if kind == "inactive":
        return inactive_days is not None and trigger.inactive_days is not None and inactive_days >= trigger.inactive_days
    return True


class TriggerRouter:
    """Enrolls a target into every active campaign whose triggers match, honouring re-enrollment policy."""

    def __init__(self, store: ExecutionStore, enroll: EnrollFn):
        self.store = store
        self.enroll = enroll

    async def check_reenrollment(self, definition: CampaignDefinition, target_id: str, now: datetime) -> Optional[str]:
        """Reason the target may not be trigger-enrolled right now, or None."""
        latest = await self.store.get_latest_enrollment(definition.campaign_id, target_id)
        if latest is None:
            return None
        if latest.is_open:
            return "already-enrolled"
        policy = definition.reenrollment
        if not policy.allowed:
            return "reenrollment-disabled"
        if policy.delay is not None:
            finished = latest.completed_at or latest.last_transition_at
            if now < finished + policy.delay.to_timedelta():
                return "reenrollment-delay"
        return None

    async def fire(
        self,
        kind: str,
        target_id: str,
        now: datetime,
        event_type: Optional[str] = None,
        inactive_days: Optional[int] = None,
        entered_at: Optional[datetime] = None,
    ) -> TriggerResult:
        """
        `entered_at` backdates new runs (never past `now`) so an event trigger's
        own event falls inside the run's engagement window.
        """
        result = TriggerResult(kind=kind, target_id=target_id)
        campaigns: List[CampaignDefinition] = await self.store.list_campaigns(status="active")

        for definition in campaigns:
            if not any(trigger_matches(t, kind, event_type, inactive_days) for t in definition.triggers):
                continue
            reason = await self.check_reenrollment(definition, target_id, now)
            if reason is not None:
                result.skipped[definition.campaign_id] = reason
                logger.info(f"[TRIGGER] {kind} for {target_id} skipped campaign {definition.campaign_id}: {reason}")
                continue
            try:
                enrollment = await self.enroll(definition, target_id, f"trigger:{kind}", now, entered_at)
            except EnrollmentRejected as e:
                result.skipped[definition.campaign_id] = e.reason
                logger.info(f"[TRIGGER] {kind} for {target_id} rejected by campaign {definition.campaign_id}: {e.reason}")
                continue
            result.enrolled[definition.campaign_id] = enrollment.enrollment_id

        logger.info(
            f"[TRIGGER] {kind} for {target_id}: enrolled={len(result.enrolled)} skipped={len(result.skipped)}"
        )
        return result
