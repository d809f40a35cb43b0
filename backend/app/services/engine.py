"""
Campaign engine facade.

Wires the store, sender, clock and timer into the executor, event ingest,
trigger router and analytics, and exposes the operations the API and the
worker tasks call.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.core.clock import Clock, ensure_utc
from app.core.config import EngineConfig
from app.core.exceptions import (
    CampaignNotFound,
    CampaignStateError,
    EnrollmentNotFound,
    EnrollmentRejected,
    InvalidTransition,
)
from app.db.store import ExecutionStore
from app.models.action_log import ActionLogEntry
from app.models.campaign import CampaignDefinition
from app.models.enrollment import Enrollment
from app.services.analytics import AnalyticsAggregator, CampaignSummary
from app.services.channel_sender import ChannelSender, ThrottledSender
from app.services.event_tracker import EventIngestResult, EventTracker
from app.services.flow_executor import FlowExecutor, TickReport
from app.services.journal import ActionJournal
from app.services.locks import EnrollmentLocks
from app.services.timers import Timer
from app.services.triggers import TriggerResult, TriggerRouter
from app.services.validation import ensure_valid

logger = logging.getLogger(__name__)


@dataclass
class BulkEnrollResult:
    campaign_id: str
    enrolled: Dict[str, str] = field(default_factory=dict)  # target_id -> enrollment_id
    rejected: Dict[str, str] = field(default_factory=dict)  # target_id -> reason


class CampaignEngine:

    def __init__(
        self,
        store: ExecutionStore,
        sender: ChannelSender,
        clock: Optional[Clock] = None,
        timer: Optional[Timer] = None,
        config: Optional[EngineConfig] = None,
        worker_id: Optional[str] = None,
    ):
        self.config = config or EngineConfig()
        self.clock = clock or Clock()
        self.store = store
        self.sender = ThrottledSender(sender, self.config.max_concurrent_sends)
        self.analytics = AnalyticsAggregator(recent_limit=self.config.recent_actions_limit)
        self.journal = ActionJournal(store, self.analytics)
        self.executor = FlowExecutor(
            store,
            self.sender,
            self.journal,
            clock=self.clock,
            timer=timer,
            locks=EnrollmentLocks(),
            config=self.config,
            worker_id=worker_id,
        )
        self.events = EventTracker(store, self.journal, self.executor, clock=self.clock, config=self.config)
        self.triggers = TriggerRouter(store, self._create_enrollment)

    def set_timer(self, timer: Timer) -> None:
        self.executor.timer = timer

    # --- campaigns -------------------------------------------------------

    async def get_campaign(self, campaign_id: str) -> CampaignDefinition:
        definition = await self.store.get_latest_definition(campaign_id)
        if definition is None:
            raise CampaignNotFound(f"Campaign {campaign_id} not found")
        return definition

    async def publish_campaign(self, definition: CampaignDefinition, activate: bool = True) -> Tuple[str, int]:
        """
        Validate and store `definition` as the next version of its campaign.
        A paused campaign stays paused; in-flight enrollments keep their version.
        """
        ensure_valid(definition)
        now = self.clock.now()
        latest = await self.store.get_latest_definition(definition.campaign_id)

        if latest is not None and latest.status == "archived":
            raise CampaignStateError(f"Campaign {definition.campaign_id} is archived and cannot be republished")

        if latest is not None and latest.status == "paused":
            status = "paused"
        elif activate:
            status = "active"
        else:
            status = latest.status if latest is not None else "draft"

        version = latest.version + 1 if latest is not None else 1
        stored = definition.model_copy(update={"version": version, "status": status, "published_at": now})
        await self.store.save_definition(stored)
        if latest is not None and latest.status != status:
            await self.store.set_campaign_status(definition.campaign_id, status)

        logger.info(
            f"[CAMPAIGN] Published {definition.campaign_id} v{version} "
            f"({stored.step_count} steps, status={status})"
        )
        return definition.campaign_id, version

    async def _set_status(self, campaign_id: str, allowed_from: Iterable[str], status: str) -> CampaignDefinition:
        definition = await self.get_campaign(campaign_id)
        if definition.status == status:
            return definition
        if definition.status not in allowed_from:
            raise CampaignStateError(
                f"Campaign {campaign_id} cannot go from {definition.status} to {status}",
                {"status": definition.status},
            )
        await self.store.set_campaign_status(campaign_id, status)
        logger.info(f"[CAMPAIGN] {campaign_id}: {definition.status} → {status}")
        return definition.model_copy(update={"status": status})

    async def activate_campaign(self, campaign_id: str) -> CampaignDefinition:
        return await self._set_status(campaign_id, ("draft", "paused"), "active")

    async def pause_campaign(self, campaign_id: str) -> CampaignDefinition:
        return await self._set_status(campaign_id, ("active",), "paused")

    async def resume_campaign(self, campaign_id: str) -> CampaignDefinition:
        return await self._set_status(campaign_id, ("paused",), "active")

    async def archive_campaign(self, campaign_id: str) -> int:
        """Archive the campaign and cancel every open enrollment. Returns how many were cancelled."""
        await self._set_status(campaign_id, ("draft", "active", "paused"), "archived")
        now = self.clock.now()
        cancelled = 0
        for enrollment in await self.store.list_open_enrollments(campaign_id):
            if await self.executor.terminate(enrollment.enrollment_id, "cancelled", "campaign-archived", now):
                cancelled += 1
        logger.info(f"[CAMPAIGN] Archived {campaign_id}, cancelled {cancelled} open enrollments")
        return cancelled

    # --- enrollments -----------------------------------------------------

    async def _create_enrollment(
        self,
        definition: CampaignDefinition,
        target_id: str,
        via: str,
        now: datetime,
        entered_at: Optional[datetime] = None,
    ) -> Enrollment:
        enrollment = Enrollment(
            campaign_id=definition.campaign_id,
            campaign_version=definition.version,
            target_id=target_id,
            entered_at=min(entered_at, now) if entered_at is not None else now,
            last_transition_at=now,
            enrolled_via=via,
        )
        await self.store.create_enrollment(enrollment)
        await self.journal.record(
            enrollment,
            "enrolled",
            step_index=0,
            to_status="pending",
            detail=via,
            occurred_at=now,
        )
        logger.info(
            f"[ENROLL] {target_id} enrolled in {definition.campaign_id} v{definition.version} "
            f"as {enrollment.enrollment_id} via {via}"
        )
        return enrollment

    async def _active_campaign(self, campaign_id: str) -> CampaignDefinition:
        definition = await self.get_campaign(campaign_id)
        if definition.status != "active":
            raise EnrollmentRejected(
                f"Campaign {campaign_id} is {definition.status}, not accepting enrollments",
                reason="campaign-not-active",
                details={"status": definition.status},
            )
        return definition

    async def enroll(self, campaign_id: str, target_id: str, via: str = "manual") -> str:
        definition = await self._active_campaign(campaign_id)
        enrollment = await self._create_enrollment(definition, target_id, via, self.clock.now())
        return enrollment.enrollment_id

    async def bulk_enroll(self, campaign_id: str, target_ids: List[str]) -> BulkEnrollResult:
        definition = await self._active_campaign(campaign_id)
        now = self.clock.now()
        result = BulkEnrollResult(campaign_id=campaign_id)
        unique_targets = list(dict.fromkeys(target_ids))

        outcomes = await asyncio.gather(
            *[self._create_enrollment(definition, t, "bulk", now) for t in unique_targets],
            return_exceptions=True,
        )
        for target_id, outcome in zip(unique_targets, outcomes):
            if isinstance(outcome, EnrollmentRejected):
                result.rejected[target_id] = outcome.reason
            elif isinstance(outcome, Exception):
                logger.error(f"[ENROLL] Bulk enroll of {target_id} failed: {outcome}", exc_info=outcome)
                result.rejected[target_id] = "error"
            else:
                result.enrolled[target_id] = outcome.enrollment_id

        logger.info(
            f"[ENROLL] Bulk enroll into {campaign_id}: {len(result.enrolled)} enrolled, "
            f"{len(result.rejected)} rejected"
        )
        return result

    async def fire_trigger(
        self,
        kind: str,
        target_id: str,
        event_type: Optional[str] = None,
        inactive_days: Optional[int] = None,
        entered_at: Optional[datetime] = None,
    ) -> TriggerResult:
        return await self.triggers.fire(
            kind,
            target_id,
            self.clock.now(),
            event_type=event_type,
            inactive_days=inactive_days,
            entered_at=entered_at,
        )

    async def cancel_enrollment(self, enrollment_id: str, reason: str = "cancelled-by-operator") -> Enrollment:
        cancelled = await self.executor.terminate(enrollment_id, "cancelled", reason)
        if cancelled is not None:
            return cancelled
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
        raise InvalidTransition(
            f"Enrollment {enrollment_id} is already {enrollment.status}",
            {"status": enrollment.status},
        )

    async def resolve_task(self, enrollment_id: str, next_step: Optional[int] = None) -> Enrollment:
        return await self.executor.resolve_task(enrollment_id, next_step=next_step)

    async def get_enrollment_status(self, campaign_id: str, target_id: str) -> Enrollment:
        """The target's most recent enrollment in the campaign."""
        enrollment = await self.store.get_latest_enrollment(campaign_id, target_id)
        if enrollment is None:
            raise EnrollmentNotFound(f"Target {target_id} has never been enrolled in {campaign_id}")
        return enrollment

    # --- events ----------------------------------------------------------

    async def record_event(
        self,
        target_id: str,
        event_type: str,
        occurred_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> EventIngestResult:
        occurred_at = ensure_utc(occurred_at) if occurred_at else self.clock.now()
        if await self.events.find_duplicate(target_id, event_type, occurred_at, idempotency_key) is None:
            # Event-triggered campaigns enroll first, entering no later than the
            # event itself, so the new run's branches see it.
            await self.fire_trigger("event", target_id, event_type=event_type, entered_at=occurred_at)
        return await self.events.record_event(
            target_id,
            event_type,
            occurred_at=occurred_at,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    # --- execution -------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        return await self.executor.tick(now)

    async def advance(self, enrollment_id: str) -> Optional[Enrollment]:
        return await self.executor.advance(enrollment_id)

    # --- analytics -------------------------------------------------------

    async def get_campaign_summary(self, campaign_id: str) -> CampaignSummary:
        await self.get_campaign(campaign_id)
        await self.analytics.refresh(self.store, campaign_id)
        return self.analytics.summary(campaign_id)

    async def list_actions(self, campaign_id: str, after_sequence: int = 0) -> List[ActionLogEntry]:
        return await self.store.list_actions(campaign_id, after_sequence=after_sequence)

    async def rebuild_analytics(self) -> Dict[str, CampaignSummary]:
        return self.analytics.rebuild(await self.store.list_actions())
