"""Publishing, campaign status moves and enrollment admission."""
import pytest

from app.core.exceptions import (
    CampaignNotFound,
    CampaignStateError,
    CampaignValidationError,
    EnrollmentNotFound,
    EnrollmentRejected,
)
from app.models.campaign import SendStep
from factories import START, nurture_campaign, single_send_campaign


class TestPublish:

    @pytest.mark.asyncio
    async def test_first_publish_is_version_one_and_active(self, engine):
        cid, version = await engine.publish_campaign(nurture_campaign())
        campaign = await engine.get_campaign(cid)
        assert version == 1
        assert campaign.status == "active"
        assert campaign.published_at == START

    @pytest.mark.asyncio
    async def test_invalid_definition_is_not_stored(self, engine, store):
        bad = single_send_campaign(steps=[SendStep(channel="email", content_ref="x", next_step=4)])
        with pytest.raises(CampaignValidationError) as exc_info:
            await engine.publish_campaign(bad)
        assert exc_info.value.errors
        assert await store.get_latest_definition("camp_single") is None

    @pytest.mark.asyncio
    async def test_draft_rejects_enrollment_until_activated(self, engine):
        cid, _ = await engine.publish_campaign(single_send_campaign(), activate=False)
        assert (await engine.get_campaign(cid)).status == "draft"

        with pytest.raises(EnrollmentRejected) as exc_info:
            await engine.enroll(cid, "lead_1")
        assert exc_info.value.reason == "campaign-not-active"

        await engine.activate_campaign(cid)
        assert await engine.enroll(cid, "lead_1")

    @pytest.mark.asyncio
    async def test_republish_keeps_paused_status(self, engine):
        cid, _ = await engine.publish_campaign(single_send_campaign())
        await engine.pause_campaign(cid)

        _, version = await engine.publish_campaign(single_send_campaign(content_ref="hello_v2"))
        campaign = await engine.get_campaign(cid)
        assert version == 2
        assert campaign.status == "paused"
        assert campaign.steps[0].content_ref == "hello_v2"

    @pytest.mark.asyncio
    async def test_archived_campaign_is_final(self, engine):
        cid, _ = await engine.publish_campaign(single_send_campaign())
        assert await engine.archive_campaign(cid) == 0

        with pytest.raises(CampaignStateError):
            await engine.publish_campaign(single_send_campaign())
        with pytest.raises(CampaignStateError):
            await engine.resume_campaign(cid)
        with pytest.raises(CampaignStateError):
            await engine.activate_campaign(cid)


class TestStatusMoves:

    @pytest.mark.asyncio
    async def test_pause_requires_active(self, engine):
        cid, _ = await engine.publish_campaign(single_send_campaign(), activate=False)
        with pytest.raises(CampaignStateError):
            await engine.pause_campaign(cid)

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, engine):
        cid, _ = await engine.publish_campaign(single_send_campaign())
        assert (await engine.activate_campaign(cid)).status == "active"

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, engine):
        with pytest.raises(CampaignNotFound):
            await engine.get_campaign("nope")
        with pytest.raises(CampaignNotFound):
            await engine.pause_campaign("nope")
        with pytest.raises(CampaignNotFound):
            await engine.get_campaign_summary("nope")


class TestEnrollment:

    @pytest.mark.asyncio
    async def test_second_open_enrollment_is_rejected(self, engine):
        cid, _ = await engine.publish_campaign(nurture_campaign())
        await engine.enroll(cid, "lead_1")
        with pytest.raises(EnrollmentRejected) as exc_info:
            await engine.enroll(cid, "lead_1")
        assert exc_info.value.reason == "already-enrolled"

    @pytest.mark.asyncio
    async def test_bulk_enroll(self, engine):
        cid, _ = await engine.publish_campaign(nurture_campaign())
        existing = await engine.enroll(cid, "lead_b")

        result = await engine.bulk_enroll(cid, ["lead_a", "lead_b", "lead_a", "lead_c"])

        assert sorted(result.enrolled) == ["lead_a", "lead_c"]
        assert result.rejected == {"lead_b": "already-enrolled"}
        assert (await engine.get_enrollment_status(cid, "lead_b")).enrollment_id == existing
        assert (await engine.get_enrollment_status(cid, "lead_a")).enrolled_via == "bulk"

    @pytest.mark.asyncio
    async def test_bulk_enroll_into_paused_campaign(self, engine):
        cid, _ = await engine.publish_campaign(nurture_campaign())
        await engine.pause_campaign(cid)
        with pytest.raises(EnrollmentRejected):
            await engine.bulk_enroll(cid, ["lead_a"])

    @pytest.mark.asyncio
    async def test_status_of_never_enrolled_target(self, engine):
        cid, _ = await engine.publish_campaign(nurture_campaign())
        with pytest.raises(EnrollmentNotFound):
            await engine.get_enrollment_status(cid, "lead_x")
