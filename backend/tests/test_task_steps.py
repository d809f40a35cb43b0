"""Human task steps: block, resolve by operator, resolve by timeout."""
from datetime import timedelta

import pytest

from app.core.exceptions import EnrollmentNotFound, TaskResolutionError
from app.models.common import Duration
from factories import single_send_campaign, task_campaign


class TestTaskSteps:

    @pytest.mark.asyncio
    async def test_task_blocks_until_resolved(self, engine, sender, clock):
        cid, _ = await engine.publish_campaign(task_campaign())
        eid = await engine.enroll(cid, "lead_1")
        await engine.tick()

        enrollment = await engine.get_enrollment_status(cid, "lead_1")
        assert enrollment.status == "blocked-on-task"
        assert enrollment.due_at is None

        clock.advance(timedelta(days=30))
        assert (await engine.tick()).selected == 0

        resolved = await engine.resolve_task(eid)
        assert resolved.status == "completed"
        assert sender.contents() == ["after_call", "escalation"]

        created = [e for e in await engine.list_actions(cid) if e.action_type == "task_created"]
        assert created[0].metadata["assignee_role"] == "admissions_advisor"

    @pytest.mark.asyncio
    async def test_resolve_with_explicit_next_step(self, engine, sender):
        cid, _ = await engine.publish_campaign(task_campaign())
        eid = await engine.enroll(cid, "lead_1")
        await engine.tick()

        await engine.resolve_task(eid, next_step=2)
        assert sender.contents() == ["escalation"]

    @pytest.mark.asyncio
    async def test_timeout_follows_on_timeout(self, engine, sender, clock):
        definition = task_campaign(timeout=Duration(value=1, unit="days"), on_timeout=2)
        cid, _ = await engine.publish_campaign(definition)
        await engine.enroll(cid, "lead_1")
        await engine.tick()

        enrollment = await engine.get_enrollment_status(cid, "lead_1")
        assert enrollment.due_at == clock.now() + timedelta(days=1)

        clock.advance(timedelta(days=1))
        await engine.tick()

        assert sender.contents() == ["escalation"]
        resolved = [e for e in await engine.list_actions(cid) if e.action_type == "task_resolved"]
        assert resolved[0].metadata["resolution"] == "timeout"

    @pytest.mark.asyncio
    async def test_timeout_without_on_timeout_continues(self, engine, sender, clock):
        cid, _ = await engine.publish_campaign(task_campaign(timeout=Duration(value=4, unit="hours")))
        await engine.enroll(cid, "lead_1")
        await engine.tick()

        clock.advance(timedelta(hours=4))
        await engine.tick()
        assert sender.contents() == ["after_call", "escalation"]


class TestTaskResolutionErrors:

    @pytest.mark.asyncio
    async def test_not_blocked(self, engine):
        cid, _ = await engine.publish_campaign(single_send_campaign())
        eid = await engine.enroll(cid, "lead_1")
        with pytest.raises(TaskResolutionError):
            await engine.resolve_task(eid)

    @pytest.mark.asyncio
    async def test_next_step_out_of_range(self, engine):
        cid, _ = await engine.publish_campaign(task_campaign())
        eid = await engine.enroll(cid, "lead_1")
        await engine.tick()
        with pytest.raises(TaskResolutionError):
            await engine.resolve_task(eid, next_step=9)
        assert (await engine.get_enrollment_status(cid, "lead_1")).status == "blocked-on-task"

    @pytest.mark.asyncio
    async def test_unknown_enrollment(self, engine):
        with pytest.raises(EnrollmentNotFound):
            await engine.resolve_task("enr_missing")
