"""Contract behaviour of the in-memory execution store."""
from datetime import timedelta

import pytest

from app.core.exceptions import EnrollmentRejected
from app.models.action_log import ActionLogEntry
from app.models.engagement import EngagementEvent
from app.models.enrollment import Enrollment
from factories import START, single_send_campaign


def _enrollment(**kwargs):
    fields = dict(campaign_id="camp", campaign_version=1, target_id="lead_1", entered_at=START, last_transition_at=START)
    fields.update(kwargs)
    return Enrollment(**fields)


def _action(campaign_id="camp", action_type="enrolled"):
    return ActionLogEntry(
        campaign_id=campaign_id,
        campaign_version=1,
        enrollment_id="enr_1",
        target_id="lead_1",
        action_type=action_type,
    )


class TestDefinitions:

    @pytest.mark.asyncio
    async def test_versions_are_immutable(self, store):
        await store.save_definition(single_send_campaign(version=1))
        with pytest.raises(ValueError):
            await store.save_definition(single_send_campaign(version=1, name="changed"))

    @pytest.mark.asyncio
    async def test_latest_and_status_is_campaign_wide(self, store):
        await store.save_definition(single_send_campaign(version=1, status="active"))
        await store.save_definition(single_send_campaign(version=2, status="active", content_ref="v2"))

        latest = await store.get_latest_definition("camp_single")
        assert latest.version == 2
        assert await store.set_campaign_status("camp_single", "paused") == 2
        assert (await store.get_definition("camp_single", 1)).status == "paused"
        assert [c.version for c in await store.list_campaigns(status="paused")] == [2]

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        await store.save_definition(single_send_campaign(version=1))
        definition = await store.get_definition("camp_single", 1)
        definition.name = "mutated"
        assert (await store.get_definition("camp_single", 1)).name == "Single send"


class TestEnrollments:

    @pytest.mark.asyncio
    async def test_one_open_enrollment_per_pair(self, store):
        await store.create_enrollment(_enrollment())
        with pytest.raises(EnrollmentRejected) as exc_info:
            await store.create_enrollment(_enrollment())
        assert exc_info.value.reason == "already-enrolled"

        await store.create_enrollment(_enrollment(target_id="lead_2"))

    @pytest.mark.asyncio
    async def test_terminal_enrollment_allows_new_run(self, store):
        first = await store.create_enrollment(_enrollment())
        await store.terminate_enrollment(first.enrollment_id, "completed", None, START)
        second = await store.create_enrollment(_enrollment(entered_at=START + timedelta(days=1)))

        latest = await store.get_latest_enrollment("camp", "lead_1")
        assert latest.enrollment_id == second.enrollment_id

    @pytest.mark.asyncio
    async def test_save_refuses_to_overwrite_terminal_row(self, store):
        enrollment = await store.create_enrollment(_enrollment(status="active"))
        before = await store.terminate_enrollment(enrollment.enrollment_id, "cancelled", "operator", START)
        assert before.status == "active"

        enrollment.current_step_index = 3
        assert await store.save_enrollment(enrollment) is False
        stored = await store.get_enrollment(enrollment.enrollment_id)
        assert stored.status == "cancelled"
        assert stored.current_step_index == 0

    @pytest.mark.asyncio
    async def test_terminate_only_once(self, store):
        enrollment = await store.create_enrollment(_enrollment())
        assert await store.terminate_enrollment(enrollment.enrollment_id, "cancelled", None, START) is not None
        assert await store.terminate_enrollment(enrollment.enrollment_id, "failed", None, START) is None

    @pytest.mark.asyncio
    async def test_find_due(self, store):
        await store.create_enrollment(_enrollment(target_id="pending"))
        await store.create_enrollment(_enrollment(target_id="due", status="waiting", due_at=START))
        await store.create_enrollment(
            _enrollment(target_id="later", status="waiting", due_at=START + timedelta(hours=1))
        )
        await store.create_enrollment(_enrollment(target_id="task", status="blocked-on-task"))

        due = await store.find_due_enrollments(START)
        assert sorted(e.target_id for e in due) == ["due", "pending"]

    @pytest.mark.asyncio
    async def test_lease(self, store):
        enrollment = await store.create_enrollment(_enrollment())
        eid = enrollment.enrollment_id
        until = START + timedelta(minutes=2)

        assert await store.acquire_lease(eid, "w1", START, until)
        assert not await store.acquire_lease(eid, "w2", START, until)
        assert await store.acquire_lease(eid, "w1", START, until)
        # Expired leases can be taken over.
        assert await store.acquire_lease(eid, "w2", until, until + timedelta(minutes=2))

        await store.release_lease(eid, "w1")
        assert (await store.get_enrollment(eid)).lease_owner == "w2"
        await store.release_lease(eid, "w2")
        assert (await store.get_enrollment(eid)).lease_owner is None


class TestActionLog:

    @pytest.mark.asyncio
    async def test_sequences_are_contiguous_per_campaign(self, store):
        a1 = await store.append_action(_action("a"))
        b1 = await store.append_action(_action("b"))
        a2 = await store.append_action(_action("a"))
        assert (a1.sequence, b1.sequence, a2.sequence) == (1, 1, 2)

        assert [e.sequence for e in await store.list_actions("a")] == [1, 2]
        assert [e.sequence for e in await store.list_actions("a", after_sequence=1)] == [2]
        assert len(await store.list_actions()) == 3


class TestEvents:

    @pytest.mark.asyncio
    async def test_idempotency_key_is_unique(self, store):
        event = EngagementEvent(target_id="lead_1", event_type="email_opened", occurred_at=START, idempotency_key="k1")
        assert await store.add_event(event) is True
        duplicate = EngagementEvent(target_id="lead_1", event_type="email_opened", occurred_at=START, idempotency_key="k1")
        assert await store.add_event(duplicate) is False
        assert (await store.find_event_by_key("k1")).event_id == event.event_id

    @pytest.mark.asyncio
    async def test_events_near_and_range(self, store):
        await store.add_event(EngagementEvent(target_id="lead_1", event_type="email_opened", occurred_at=START))
        await store.add_event(
            EngagementEvent(target_id="lead_1", event_type="email_opened", occurred_at=START + timedelta(hours=1))
        )

        near = await store.find_events_near("lead_1", "email_opened", START + timedelta(seconds=3), timedelta(seconds=5))
        assert len(near) == 1
        assert len(await store.list_events("lead_1", since=START + timedelta(minutes=1))) == 1
        assert len(await store.list_events("lead_1", until=START)) == 1
        assert await store.list_events("lead_2") == []
