"""Trigger routing and re-enrollment policy."""
from datetime import timedelta

import pytest

from app.models.campaign import BranchStep, CampaignDefinition, ReenrollmentPolicy, SendStep, TriggerDefinition
from app.models.common import Duration
from app.models.conditions import EventOccurred
from app.services.triggers import trigger_matches
from factories import nurture_campaign, single_send_campaign


class TestTriggerMatching:

    def test_kinds(self):
        assert trigger_matches(TriggerDefinition(kind="lead_created"), "lead_created")
        assert not trigger_matches(TriggerDefinition(kind="lead_created"), "manual")
        assert trigger_matches(TriggerDefinition(kind="event", event_type="form_submitted"), "event", "form_submitted")
        assert not trigger_matches(TriggerDefinition(kind="event", event_type="form_submitted"), "event", "email_opened")

    def test_inactive_threshold(self):
        trigger = TriggerDefinition(kind="inactive", inactive_days=30)
        assert not trigger_matches(trigger, "inactive", inactive_days=10)
        assert trigger_matches(trigger, "inactive", inactive_days=30)
        assert not trigger_matches(trigger, "inactive")


class TestTriggerRouting:

    @pytest.mark.asyncio
    async def test_lead_created_enrolls_once(self, engine):
        cid, _ = await engine.publish_campaign(nurture_campaign())

        first = await engine.fire_trigger("lead_created", "lead_9")
        second = await engine.fire_trigger("lead_created", "lead_9")

        assert list(first.enrolled) == [cid]
        assert second.enrolled == {}
        assert second.skipped == {cid: "already-enrolled"}
        enrollment = await engine.get_enrollment_status(cid, "lead_9")
        assert enrollment.enrolled_via == "trigger:lead_created"

    @pytest.mark.asyncio
    async def test_only_active_campaigns_are_triggered(self, engine):
        cid, _ = await engine.publish_campaign(nurture_campaign())
        await engine.pause_campaign(cid)
        result = await engine.fire_trigger("lead_created", "lead_9")
        assert result.enrolled == {}
        assert result.skipped == {}

    @pytest.mark.asyncio
    async def test_event_trigger_enrolls_before_ingest(self, engine):
        definition = single_send_campaign(triggers=[TriggerDefinition(kind="event", event_type="form_submitted")])
        cid, _ = await engine.publish_campaign(definition)

        result = await engine.record_event("lead_5", "form_submitted")

        enrollment = await engine.get_enrollment_status(cid, "lead_5")
        assert result.accepted
        assert result.correlated == [enrollment.enrollment_id]
        assert enrollment.enrolled_via == "trigger:event"

    @pytest.mark.asyncio
    async def test_duplicate_event_does_not_trigger_again(self, engine):
        definition = single_send_campaign(
            triggers=[TriggerDefinition(kind="event", event_type="form_submitted")],
            reenrollment=ReenrollmentPolicy(allowed=True),
        )
        cid, _ = await engine.publish_campaign(definition)
        await engine.record_event("lead_5", "form_submitted", idempotency_key="form-1")
        await engine.tick()

        result = await engine.record_event("lead_5", "form_submitted", idempotency_key="form-1")
        assert result.duplicate
        assert (await engine.get_enrollment_status(cid, "lead_5")).status == "completed"

    @pytest.mark.asyncio
    async def test_late_trigger_event_is_visible_to_the_new_run(self, engine, sender, clock):
        definition = CampaignDefinition(
            campaign_id="camp_form",
            name="Form follow-up",
            steps=[
                BranchStep(condition=EventOccurred(event_type="form_submitted"), on_true=2, on_false=1),
                SendStep(channel="email", content_ref="finish_your_form"),
                SendStep(channel="email", content_ref="thanks_for_applying"),
            ],
            triggers=[TriggerDefinition(kind="event", event_type="form_submitted")],
        )
        cid, _ = await engine.publish_campaign(definition)
        submitted_at = clock.now()
        clock.advance(timedelta(minutes=3))  # webhook delivered late

        await engine.record_event("lead_5", "form_submitted", occurred_at=submitted_at)
        enrollment = await engine.get_enrollment_status(cid, "lead_5")
        assert enrollment.entered_at == submitted_at
        assert enrollment.last_transition_at == clock.now()

        await engine.tick()
        assert sender.contents() == ["thanks_for_applying"]

    @pytest.mark.asyncio
    async def test_future_dated_trigger_event_enters_now(self, engine, clock):
        definition = single_send_campaign(triggers=[TriggerDefinition(kind="event", event_type="form_submitted")])
        cid, _ = await engine.publish_campaign(definition)

        await engine.record_event("lead_5", "form_submitted", occurred_at=clock.now() + timedelta(minutes=5))
        assert (await engine.get_enrollment_status(cid, "lead_5")).entered_at == clock.now()

    @pytest.mark.asyncio
    async def test_inactive_trigger(self, engine):
        definition = single_send_campaign(
            campaign_id="camp_reactivate",
            campaign_type="reactivation",
            triggers=[TriggerDefinition(kind="inactive", inactive_days=30)],
        )
        cid, _ = await engine.publish_campaign(definition)

        assert (await engine.fire_trigger("inactive", "lead_3", inactive_days=10)).enrolled == {}
        assert cid in (await engine.fire_trigger("inactive", "lead_3", inactive_days=45)).enrolled


class TestReenrollment:

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, engine):
        cid, _ = await engine.publish_campaign(single_send_campaign(triggers=[TriggerDefinition(kind="lead_created")]))
        await engine.fire_trigger("lead_created", "lead_1")
        await engine.tick()

        result = await engine.fire_trigger("lead_created", "lead_1")
        assert result.skipped == {cid: "reenrollment-disabled"}

    @pytest.mark.asyncio
    async def test_delay(self, engine, sender, clock):
        definition = single_send_campaign(
            triggers=[TriggerDefinition(kind="lead_created")],
            reenrollment=ReenrollmentPolicy(allowed=True, delay=Duration(value=7, unit="days")),
        )
        cid, _ = await engine.publish_campaign(definition)
        await engine.fire_trigger("lead_created", "lead_1")
        await engine.tick()

        clock.advance(timedelta(days=3))
        assert (await engine.fire_trigger("lead_created", "lead_1")).skipped == {cid: "reenrollment-delay"}

        clock.advance(timedelta(days=4))
        result = await engine.fire_trigger("lead_created", "lead_1")
        assert cid in result.enrolled
        await engine.tick()
        assert sender.contents("lead_1") == ["hello", "hello"]
