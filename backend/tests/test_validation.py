"""Publish-time validation of campaign definitions."""
import pytest

from app.core.exceptions import CampaignValidationError
from app.models.campaign import BranchStep, CampaignDefinition, SendStep, TaskStep, TriggerDefinition, WaitStep
from app.models.common import Duration
from app.models.conditions import EventOccurred
from app.services.validation import ensure_valid, validate_definition
from factories import nurture_campaign


def _campaign(steps, **kwargs):
    return CampaignDefinition(campaign_id="camp_v", name="validation", steps=steps, **kwargs)


def _branch(on_true, on_false):
    return BranchStep(condition=EventOccurred(event_type="email_opened"), on_true=on_true, on_false=on_false)


class TestValidDefinitions:

    def test_nurture_campaign_is_valid(self):
        assert validate_definition(nurture_campaign()) == []

    def test_branch_to_end_is_reachable(self):
        definition = _campaign([_branch(1, 1), SendStep(channel="email", content_ref="x")])
        assert validate_definition(definition) == []

    def test_cycle_with_exit_is_allowed(self):
        """A branch loop is fine as long as one arm can still reach the end."""
        definition = _campaign([
            SendStep(channel="email", content_ref="ping"),
            WaitStep(duration=Duration(value=1, unit="days")),
            _branch(3, 0),
            SendStep(channel="email", content_ref="done"),
        ])
        assert validate_definition(definition) == []

    def test_ensure_valid_passes_silently(self):
        ensure_valid(nurture_campaign())


class TestRejectedDefinitions:

    def test_empty_steps(self):
        assert validate_definition(_campaign([])) == ["Campaign must have at least one step"]

    @pytest.mark.parametrize("on_true,on_false", [(5, 1), (1, -1), (2, 2)])
    def test_branch_target_out_of_range(self, on_true, on_false):
        definition = _campaign([_branch(on_true, on_false), SendStep(channel="email", content_ref="x")])
        errors = validate_definition(definition)
        assert any("outside [0, 2)" in e for e in errors)

    def test_next_step_out_of_range(self):
        definition = _campaign([SendStep(channel="email", content_ref="x", next_step=7)])
        assert any("next_step=7" in e for e in validate_definition(definition))

    def test_empty_content_ref(self):
        definition = _campaign([SendStep(channel="email", content_ref="  ")])
        assert validate_definition(definition) == ["Step 0 (send): content_ref must not be empty"]

    def test_orphan_step(self):
        definition = _campaign([
            SendStep(channel="email", content_ref="a", next_step=2),
            SendStep(channel="email", content_ref="orphan"),
            SendStep(channel="email", content_ref="b"),
        ])
        errors = validate_definition(definition)
        assert errors == ["Step 1 (send) is unreachable from step 0"]

    def test_cycle_that_never_ends(self):
        definition = _campaign([
            SendStep(channel="email", content_ref="a"),
            _branch(0, 1),
        ])
        errors = validate_definition(definition)
        assert len(errors) == 1
        assert "can never reach the end" in errors[0]

    def test_task_on_timeout_without_timeout(self):
        definition = _campaign([
            TaskStep(assignee_role="advisor", on_timeout=1),
            SendStep(channel="email", content_ref="x"),
        ])
        assert "Step 0 (task): on_timeout requires a timeout" in validate_definition(definition)

    def test_trigger_parameters(self):
        definition = _campaign(
            [SendStep(channel="email", content_ref="x")],
            triggers=[TriggerDefinition(kind="event"), TriggerDefinition(kind="inactive", inactive_days=0)],
        )
        errors = validate_definition(definition)
        assert "Trigger 'event' requires an event_type" in errors
        assert "Trigger 'inactive' requires a positive inactive_days" in errors

    def test_ensure_valid_collects_every_error(self):
        definition = _campaign([
            SendStep(channel="email", content_ref=""),
            _branch(9, 0),
        ])
        with pytest.raises(CampaignValidationError) as exc_info:
            ensure_valid(definition)
        assert len(exc_info.value.errors) == 2
