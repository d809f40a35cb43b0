import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from app.core.clock import Clock, ensure_utc
from app.core.config import EngineConfig
from app.db.store import ExecutionStore
from app.models.campaign import BranchStep, CampaignDefinition
from app.models.engagement import EngagementEvent
from app.models.enrollment import Enrollment
from app.services.conditions import references_any
from app.services.flow_executor import FlowExecutor
from app.services.journal import ActionJournal

logger = logging.getLogger(__name__)


@dataclass
class EventIngestResult:
    accepted: bool
    duplicate: bool = False
    event_id: Optional[str] = None
    correlated: List[str] = field(default_factory=list)
    woken: List[str] = field(default_factory=list)
    reason: Optional[str] = None


class EventTracker:
    """
    Engagement event ingest: dedupe, correlate to open enrollments, store,
    then wake any enrollment whose branch condition is waiting on this type.
    """

    def __init__(
        self,
        store: ExecutionStore,
        journal: ActionJournal,
        executor: FlowExecutor,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.store = store
        self.journal = journal
        self.executor = executor
        self.clock = clock or Clock()
        self.config = config or EngineConfig()

    async def find_duplicate(
        self, target_id: str, event_type: str, occurred_at: datetime, idempotency_key: Optional[str]
    ) -> Optional[EngagementEvent]:
        if idempotency_key:
            return await self.store.find_event_by_key(idempotency_key)
        nearby = await self.store.find_events_near(target_id, event_type, occurred_at, self.config.dedupe_window)
        return nearby[0] if nearby else None

    async def record_event(
        self,
        target_id: str,
        event_type: str,
        occurred_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> EventIngestResult:
        now = self.clock.now()
        occurred_at = ensure_utc(occurred_at) if occurred_at else now

        existing = await self.find_duplicate(target_id, event_type, occurred_at, idempotency_key)
        if existing is not None:
            logger.info(
                f"[EVENT] Duplicate {event_type} for {target_id} ignored "
                f"(matches {existing.event_id}, key={idempotency_key})"
            )
            return EventIngestResult(accepted=False, duplicate=True, event_id=existing.event_id, reason="duplicate")

        enrollments = await self.store.list_enrollments_for_target(target_id)
        if not enrollments:
            logger.warning(f"[EVENT] No enrollment for target {target_id}, discarding {event_type}")
            return EventIngestResult(accepted=False, reason="uncorrelated")

        event = EngagementEvent(
            target_id=target_id,
            event_type=event_type,
            occurred_at=occurred_at,
            received_at=now,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        if not await self.store.add_event(event):
            # Lost a race with a concurrent delivery of the same key.
            return EventIngestResult(accepted=False, duplicate=True, reason="duplicate")

        result = EventIngestResult(accepted=True, event_id=event.event_id)
        open_enrollments = [e for e in enrollments if e.is_open]
        definitions: Dict[Tuple[str, int], Optional[CampaignDefinition]] = {}
        to_wake: List[Enrollment] = []

        for enrollment in open_enrollments:
            await self.journal.record(
                enrollment,
                "event_received",
                step_index=enrollment.current_step_index,
                detail=event_type,
                metadata={"event_id": event.event_id, **event.metadata},
                occurred_at=now,
            )
            result.correlated.append(enrollment.enrollment_id)

            key = (enrollment.campaign_id, enrollment.campaign_version)
            if key not in definitions:
                definitions[key] = await self.store.get_definition(*key)
            if self._waiting_on(enrollment, definitions[key], event_type):
                to_wake.append(enrollment)

        for enrollment in to_wake:
            try:
                advanced = await self.executor.advance(enrollment.enrollment_id)
            except Exception as e:
                logger.error(f"[EVENT] Wake of {enrollment.enrollment_id} failed: {e}", exc_info=True)
                continue
            if advanced is not None:
                result.woken.append(enrollment.enrollment_id)

        logger.info(
            f"[EVENT] {event_type} for {target_id} stored as {event.event_id}: "
            f"correlated={len(result.correlated)} woken={len(result.woken)}"
        )
        return result

    @staticmethod
    def _waiting_on(enrollment: Enrollment, definition: Optional[CampaignDefinition], event_type: str) -> bool:
        if definition is None or enrollment.status not in ("active", "blocked-on-event"):
            return False
        if enrollment.current_step_index >= definition.step_count:
            return False
        step = definition.steps[enrollment.current_step_index]
        return isinstance(step, BranchStep) and references_any(step.condition, [event_type])
