import asyncio
import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from app.core.clock import Clock
from app.core.config import EngineConfig
from app.core.exceptions import (
    EnrollmentNotFound,
    InvalidTransition,
    PermanentChannelError,
    TaskResolutionError,
)
from app.db.store import ExecutionStore
from app.models.campaign import BranchStep, CampaignDefinition, SendStep, TaskStep, WaitStep
from app.models.enrollment import (
    SUSPENDED_STATUSES,
    TERMINAL_STATUSES,
    BranchRecord,
    Enrollment,
    can_transition,
)
from app.services.channel_sender import ChannelSender
from app.services.conditions import evaluate, referenced_event_types
from app.services.journal import ActionJournal
from app.services.locks import EnrollmentLocks
from app.services.timers import NullTimer, Timer

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


class _Superseded(Exception):
    """
    This copy may no longer be written: the stored enrollment went terminal
    (cancel/archive) or another worker took over its expired lease.
    """


@dataclass
class TickReport:
    now: datetime
    selected: int = 0
    advanced: int = 0
    skipped: int = 0
    errors: int = 0
    enrollment_ids: List[str] = field(default_factory=list)


class FlowExecutor:
    """
    Drives enrollments through their bound campaign version.

    Every suspension (wait, retry backoff, blocked branch, human task) is
    persisted as a status plus `due_at`; nothing sleeps. `tick` picks up
    whatever is runnable, `advance` moves a single enrollment as far as it
    can go right now.
    """

    def __init__(
        self,
        store: ExecutionStore,
        sender: ChannelSender,
        journal: ActionJournal,
        clock: Optional[Clock] = None,
        timer: Optional[Timer] = None,
        locks: Optional[EnrollmentLocks] = None,
        config: Optional[EngineConfig] = None,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.sender = sender
        self.journal = journal
        self.clock = clock or Clock()
        self.timer = timer or NullTimer()
        self.locks = locks or EnrollmentLocks()
        self.config = config or EngineConfig()
        self.worker_id = worker_id or default_worker_id()

    def _log_flow(self, enrollment: Enrollment, message: str, level: str = "info", **kwargs):
        """Structured logging for enrollment execution"""
        log_data = {
            "worker_id": self.worker_id,
            "campaign_id": enrollment.campaign_id,
            "enrollment_id": enrollment.enrollment_id,
            "target_id": enrollment.target_id,
            "step": enrollment.current_step_index,
            "status": enrollment.status,
            "message": message,
            **kwargs
        }
        if level == "info":
            logger.info(f"[FLOW] {log_data}")
        elif level == "warning":
            logger.warning(f"[FLOW] {log_data}")
        elif level == "error":
            logger.error(f"[FLOW] {log_data}")
        elif level == "debug":
            logger.debug(f"[FLOW] {log_data}")

    # --- entry points ----------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock.now()
        due = await self.store.find_due_enrollments(now)
        report = TickReport(now=now, selected=len(due))
        if not due:
            logger.debug(f"[TICK] Nothing due at {now.isoformat()}")
            return report

        semaphore = asyncio.Semaphore(self.config.tick_concurrency)

        async def run_one(enrollment_id: str):
            async with semaphore:
                return await self.advance(enrollment_id, now=now)

        results = await asyncio.gather(*[run_one(e.enrollment_id) for e in due], return_exceptions=True)
        for enrollment, result in zip(due, results):
            if isinstance(result, Exception):
                report.errors += 1
                logger.error(f"[TICK] Advance of {enrollment.enrollment_id} raised: {result}", exc_info=result)
            elif result is None:
                report.skipped += 1
            else:
                report.advanced += 1
                report.enrollment_ids.append(enrollment.enrollment_id)

        logger.info(
            f"[TICK] {now.isoformat()} selected={report.selected} advanced={report.advanced} "
            f"skipped={report.skipped} errors={report.errors}"
        )
        return report

    async def advance(self, enrollment_id: str, now: Optional[datetime] = None) -> Optional[Enrollment]:
        """
        Move one enrollment forward. Returns the enrollment as left by this
        advance, or None when another worker holds its lease or its campaign
        is paused.
        """
        async with self.locks.hold(enrollment_id):
            now = now or self.clock.now()
            if not await self._acquire(enrollment_id):
                return None
            try:
                return await self._advance_locked(enrollment_id, now)
            finally:
                await self.store.release_lease(enrollment_id, self.worker_id)

    async def resolve_task(
        self, enrollment_id: str, next_step: Optional[int] = None, now: Optional[datetime] = None
    ) -> Enrollment:
        async with self.locks.hold(enrollment_id):
            now = now or self.clock.now()
            if not await self._acquire(enrollment_id):
                if await self.store.get_enrollment(enrollment_id) is None:
                    raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
                raise TaskResolutionError(f"Enrollment {enrollment_id} is being advanced by another worker")
            try:
                return await self._resolve_task_locked(enrollment_id, next_step, now)
            finally:
                await self.store.release_lease(enrollment_id, self.worker_id)

    async def terminate(
        self,
        enrollment_id: str,
        status: str,
        reason: Optional[str],
        now: Optional[datetime] = None,
        owner: Optional[str] = None,
    ) -> Optional[Enrollment]:
        """
        Force an open enrollment into a terminal status with one conditional
        write. Without `owner` it takes effect even while another advance
        holds the lease: that advance's next save is rejected and it stops.
        With `owner` it only applies while that worker still holds the lease.
        """
        now = now or self.clock.now()
        before = await self.store.terminate_enrollment(enrollment_id, status, reason, now, owner=owner)
        if before is None:
            return None
        after = before.model_copy(
            update={
                "status": status,
                "failure_reason": reason,
                "due_at": None,
                "last_transition_at": now,
                "completed_at": now,
            }
        )
        await self.journal.record(
            after,
            "status_changed",
            step_index=before.current_step_index,
            from_status=before.status,
            to_status=status,
            detail=reason,
            occurred_at=now,
        )
        self.timer.cancel(enrollment_id)
        self._log_flow(after, f"Status change: {before.status} → {status}", reason=reason)
        return after

    # --- advance internals -------------------------------------------------

    def _lease_until(self, acquired_at: datetime) -> datetime:
        return acquired_at + timedelta(seconds=self.config.lease_seconds)

    async def _acquire(self, enrollment_id: str) -> bool:
        # Expiry counts from acquisition, not from the tick's `now`.
        acquired_at = self.clock.now()
        if await self.store.acquire_lease(enrollment_id, self.worker_id, acquired_at, self._lease_until(acquired_at)):
            return True
        logger.info(f"[EXECUTOR] {enrollment_id} is leased by another worker, skipping")
        return False

    async def _renew_lease(self, enrollment: Enrollment):
        until = self._lease_until(self.clock.now())
        if not await self.store.renew_lease(enrollment.enrollment_id, self.worker_id, until):
            self._log_flow(enrollment, "Lease lost to another worker", level="warning")
            raise _Superseded()
        enrollment.lease_owner = self.worker_id
        enrollment.lease_until = until

    async def _advance_locked(self, enrollment_id: str, now: datetime) -> Optional[Enrollment]:
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
        if enrollment.is_terminal:
            return enrollment

        try:
            definition = await self.store.get_definition(enrollment.campaign_id, enrollment.campaign_version)
            if definition is None:
                self._log_flow(enrollment, "Bound campaign version is missing", level="error")
                await self._fail(enrollment, "definition-missing", now)
                return enrollment

            if definition.status == "archived":
                return await self.terminate(
                    enrollment_id, "cancelled", "campaign-archived", now, owner=self.worker_id
                ) or enrollment
            if definition.status != "active":
                self._log_flow(enrollment, f"Campaign is {definition.status}, leaving enrollment untouched", level="debug")
                return None

            await self._resume(enrollment, definition, now)
            if enrollment.status == "active":
                await self._run(enrollment, definition, now)
        except _Superseded:
            self._log_flow(enrollment, "Enrollment was terminated or taken over concurrently, stopping", level="warning")
            return await self.store.get_enrollment(enrollment_id) or enrollment
        except Exception as e:
            self._log_flow(enrollment, f"Advance failed: {e}", level="error", error=str(e))
            logger.error(f"[EXECUTOR] Unexpected error advancing {enrollment_id}", exc_info=True)
            return await self.terminate(
                enrollment_id, "failed", "internal-error", now, owner=self.worker_id
            ) or await self.store.get_enrollment(enrollment_id) or enrollment
        return enrollment

    async def _resume(self, enrollment: Enrollment, definition: CampaignDefinition, now: datetime):
        """Bring a pending or due suspended enrollment back to `active`, or leave it suspended."""
        if enrollment.status == "pending":
            await self._transition(enrollment, "active", now, detail="enrollment started")
            if enrollment.current_step_index < definition.step_count:
                await self._record_step_entered(enrollment, definition, now)
            return

        if enrollment.status not in SUSPENDED_STATUSES:
            return

        index = enrollment.current_step_index
        step = definition.steps[index] if index < definition.step_count else None
        is_due = enrollment.due_at is not None and enrollment.due_at <= now

        if enrollment.status == "blocked-on-event":
            events = await self.store.list_events(enrollment.target_id, since=enrollment.entered_at, until=now)
            result = evaluate(step.condition, events, now)
            if result or is_due:
                via = "event" if result else "timeout"
                await self._transition(enrollment, "active", now, detail=f"branch resolved by {via}")
                await self._take_branch(enrollment, definition, step, result, now, via=via)
            return

        if not is_due:
            return

        if enrollment.status == "waiting":
            if isinstance(step, SendStep):
                await self._transition(
                    enrollment, "active", now, detail=f"retrying send (attempt {enrollment.send_attempts + 1})"
                )
                return
            await self._transition(enrollment, "active", now, detail="wait elapsed")
            await self._record(enrollment, step, "wait_elapsed", now)
            await self._move(enrollment, definition, definition.next_index(index), now)
            return

        if enrollment.status == "blocked-on-task":
            target = step.on_timeout if step.on_timeout is not None else definition.next_index(index)
            await self._transition(enrollment, "active", now, detail="task timed out")
            await self._record(
                enrollment, step, "task_resolved", now,
                detail="timeout", metadata={"next_step": target, "resolution": "timeout"},
            )
            await self._move(enrollment, definition, target, now)

    async def _run(self, enrollment: Enrollment, definition: CampaignDefinition, now: datetime):
        step_count = definition.step_count
        max_iterations = self.config.loop_cap_multiplier * max(step_count, 1)
        iterations = 0

        while enrollment.status == "active":
            index = enrollment.current_step_index
            if index >= step_count:
                await self._transition(enrollment, "completed", now, detail="past last step")
                self._log_flow(enrollment, "=== ENROLLMENT COMPLETED ===")
                return

            iterations += 1
            if iterations > max_iterations:
                await self._fail(enrollment, "loop-detected", now)
                return

            step = definition.steps[index]
            self._log_flow(enrollment, f"Executing {step.kind} step", level="debug", step_kind=step.kind)
            if isinstance(step, SendStep):
                await self._execute_send_step(enrollment, definition, step, now)
            elif isinstance(step, WaitStep):
                await self._execute_wait_step(enrollment, step, now)
            elif isinstance(step, BranchStep):
                await self._execute_branch_step(enrollment, definition, step, now)
            elif isinstance(step, TaskStep):
                await self._execute_task_step(enrollment, step, now)
            else:
                raise ValueError(f"Unknown step kind at index {index}: {step!r}")

    # --- step handlers ---------------------------------------------------

    async def _execute_send_step(
        self, enrollment: Enrollment, definition: CampaignDefinition, step: SendStep, now: datetime
    ):
        attempt = enrollment.send_attempts + 1
        idempotency_key = f"{enrollment.enrollment_id}:{enrollment.current_step_index}:{attempt}"
        await self._renew_lease(enrollment)
        try:
            receipt = await self.sender.send(
                step.channel,
                enrollment.target_id,
                step.content_ref,
                subject_ref=step.subject_ref,
                idempotency_key=idempotency_key,
            )
        except PermanentChannelError as e:
            await self._renew_lease(enrollment)
            enrollment.send_attempts = attempt
            self._log_flow(enrollment, f"Send rejected permanently: {e}", level="warning", channel=step.channel)
            await self._record(
                enrollment, step, "send_failed", now,
                detail=str(e), metadata={"attempt": attempt, "permanent": True},
            )
            await self._fail(enrollment, "channel-rejected", now)
            return
        except Exception as e:
            await self._renew_lease(enrollment)
            enrollment.send_attempts = attempt
            self._log_flow(
                enrollment, f"Send failed (attempt {attempt}/{self.config.max_send_attempts}): {e}",
                level="warning", channel=step.channel,
            )
            await self._record(
                enrollment, step, "send_failed", now,
                detail=str(e), metadata={"attempt": attempt, "permanent": False},
            )
            if attempt >= self.config.max_send_attempts:
                await self._fail(enrollment, "channel-exhausted", now)
                return
            enrollment.due_at = now + self.config.backoff(attempt)
            await self._transition(enrollment, "waiting", now, detail=f"send retry {attempt}")
            self.timer.schedule(enrollment.enrollment_id, enrollment.due_at)
            return

        # A worker that took over mid-send resends under the same idempotency key
        # and owns the journal entry.
        await self._renew_lease(enrollment)
        await self._record(
            enrollment, step, "executed", now,
            detail=step.content_ref,
            metadata={"attempt": attempt, "provider_message_id": receipt.provider_message_id},
        )
        self._log_flow(enrollment, f"Sent {step.content_ref} via {step.channel}", channel=step.channel)
        await self._move(enrollment, definition, definition.next_index(enrollment.current_step_index), now)

    async def _execute_wait_step(self, enrollment: Enrollment, step: WaitStep, now: datetime):
        enrollment.due_at = now + step.duration.to_timedelta()
        await self._transition(enrollment, "waiting", now, detail=f"wait {step.duration}")
        await self._record(
            enrollment, step, "wait_scheduled", now,
            detail=str(step.duration), metadata={"due_at": enrollment.due_at.isoformat()},
        )
        self.timer.schedule(enrollment.enrollment_id, enrollment.due_at)

    async def _execute_branch_step(
        self, enrollment: Enrollment, definition: CampaignDefinition, step: BranchStep, now: datetime
    ):
        if len(enrollment.branch_history) >= self.config.loop_cap_multiplier * definition.step_count:
            self._log_flow(enrollment, "Branch history hit the loop cap", level="warning")
            await self._fail(enrollment, "loop-detected", now)
            return

        events = await self.store.list_events(enrollment.target_id, since=enrollment.entered_at, until=now)
        result = evaluate(step.condition, events, now)
        self._log_flow(enrollment, f"Branch condition evaluated: {result}", events_seen=len(events))

        if not result and step.timeout is not None:
            enrollment.due_at = now + step.timeout.to_timedelta()
            waiting_for = ", ".join(referenced_event_types(step.condition))
            await self._transition(enrollment, "blocked-on-event", now, detail=f"waiting for {waiting_for}")
            self.timer.schedule(enrollment.enrollment_id, enrollment.due_at)
            return

        await self._take_branch(enrollment, definition, step, result, now)

    async def _execute_task_step(self, enrollment: Enrollment, step: TaskStep, now: datetime):
        if step.timeout is not None:
            enrollment.due_at = now + step.timeout.to_timedelta()
        await self._transition(enrollment, "blocked-on-task", now, detail=f"task for {step.assignee_role}")
        await self._record(
            enrollment, step, "task_created", now,
            detail=step.description or None,
            metadata={
                "assignee_role": step.assignee_role,
                "due_at": enrollment.due_at.isoformat() if enrollment.due_at else None,
            },
        )
        if enrollment.due_at is not None:
            self.timer.schedule(enrollment.enrollment_id, enrollment.due_at)

    async def _resolve_task_locked(self, enrollment_id: str, next_step: Optional[int], now: datetime) -> Enrollment:
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
        if enrollment.status != "blocked-on-task":
            raise TaskResolutionError(
                f"Enrollment {enrollment_id} is {enrollment.status}, not blocked on a task",
                {"status": enrollment.status},
            )
        definition = await self.store.get_definition(enrollment.campaign_id, enrollment.campaign_version)
        if definition is None:
            raise TaskResolutionError(f"Campaign version for {enrollment_id} is missing")

        index = enrollment.current_step_index
        target = next_step if next_step is not None else definition.next_index(index)
        if not 0 <= target < definition.step_count and next_step is not None:
            raise TaskResolutionError(
                f"next_step={next_step} is outside [0, {definition.step_count})", {"next_step": next_step}
            )

        step = definition.steps[index]
        try:
            await self._transition(enrollment, "active", now, detail="task resolved")
            await self._record(
                enrollment, step, "task_resolved", now,
                detail="manual", metadata={"next_step": target, "resolution": "manual"},
            )
            self.timer.cancel(enrollment_id)
            await self._move(enrollment, definition, target, now)
            if definition.status == "active":
                await self._run(enrollment, definition, now)
        except _Superseded:
            return await self.store.get_enrollment(enrollment_id) or enrollment
        return enrollment

    # --- state helpers ---------------------------------------------------

    async def _take_branch(
        self,
        enrollment: Enrollment,
        definition: CampaignDefinition,
        step: BranchStep,
        result: bool,
        now: datetime,
        via: str = "evaluation",
    ):
        index = enrollment.current_step_index
        target = step.on_true if result else step.on_false
        enrollment.branch_history.append(BranchRecord(step_index=index, result=result, at=now))
        await self._record(
            enrollment, step, "branch_evaluated", now,
            detail="true" if result else "false",
            metadata={"result": result, "target": target, "via": via},
        )
        await self._move(enrollment, definition, target, now)

    async def _move(self, enrollment: Enrollment, definition: CampaignDefinition, target: int, now: datetime):
        enrollment.current_step_index = target
        enrollment.send_attempts = 0
        if target >= definition.step_count:
            await self._transition(enrollment, "completed", now, detail="past last step")
            self._log_flow(enrollment, "=== ENROLLMENT COMPLETED ===")
            return
        await self._save(enrollment)
        await self._record_step_entered(enrollment, definition, now)

    async def _record_step_entered(self, enrollment: Enrollment, definition: CampaignDefinition, now: datetime):
        step = definition.steps[enrollment.current_step_index]
        await self._record(enrollment, step, "step_entered", now)

    async def _record(self, enrollment: Enrollment, step, action_type: str, now: datetime, **fields):
        await self.journal.record(
            enrollment,
            action_type,
            step_index=enrollment.current_step_index,
            step_kind=step.kind,
            channel=getattr(step, "channel", None),
            occurred_at=now,
            **fields,
        )

    async def _save(self, enrollment: Enrollment):
        if not await self.store.save_enrollment(enrollment, owner=self.worker_id):
            raise _Superseded()

    async def _transition(self, enrollment: Enrollment, new_status: str, now: datetime, detail: Optional[str] = None):
        old_status = enrollment.status
        if not can_transition(old_status, new_status):
            raise InvalidTransition(
                f"Enrollment {enrollment.enrollment_id} cannot move {old_status} → {new_status}",
                {"from": old_status, "to": new_status},
            )
        enrollment.status = new_status
        enrollment.last_transition_at = now
        if new_status == "active":
            enrollment.due_at = None
        if new_status in TERMINAL_STATUSES:
            enrollment.due_at = None
            enrollment.completed_at = now
        await self._save(enrollment)
        await self.journal.record(
            enrollment,
            "status_changed",
            step_index=enrollment.current_step_index,
            from_status=old_status,
            to_status=new_status,
            detail=detail,
            occurred_at=now,
        )
        self._log_flow(
            enrollment,
            f"Status change: {old_status} → {new_status}",
            old_status=old_status,
            new_status=new_status,
            detail=detail,
        )

    async def _fail(self, enrollment: Enrollment, reason: str, now: datetime):
        enrollment.failure_reason = reason
        await self._transition(enrollment, "failed", now, detail=reason)

