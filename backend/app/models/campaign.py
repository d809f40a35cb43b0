import uuid
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.models.common import Duration
from app.models.conditions import Condition

CampaignStatus = Literal["draft", "active", "paused", "archived"]
CampaignType = Literal["nurture", "reactivation", "custom"]
Channel = Literal["email", "sms", "call"]
TriggerKind = Literal["manual", "lead_created", "event", "inactive"]


class SendStep(BaseModel):
    kind: Literal["send"] = "send"
    channel: Channel
    content_ref: str = Field(..., examples=["welcome_email"])
    subject_ref: Optional[str] = None
    next_step: Optional[int] = None


class WaitStep(BaseModel):
    kind: Literal["wait"] = "wait"
    duration: Duration
    next_step: Optional[int] = None


class BranchStep(BaseModel):
    kind: Literal["branch"] = "branch"
    condition: Condition
    on_true: int
    on_false: int
    # When set, a false condition blocks the enrollment on the event until the timeout.
    timeout: Optional[Duration] = None


class TaskStep(BaseModel):
    kind: Literal["task"] = "task"
    assignee_role: str = Field(..., examples=["admissions_advisor"])
    description: str = ""
    timeout: Optional[Duration] = None
    on_timeout: Optional[int] = None
    next_step: Optional[int] = None


StepDefinition = Annotated[
    Union[SendStep, WaitStep, BranchStep, TaskStep],
    Field(discriminator="kind"),
]


class TriggerDefinition(BaseModel):
    kind: TriggerKind
    event_type: Optional[str] = None
    inactive_days: Optional[int] = None


class ReenrollmentPolicy(BaseModel):
    allowed: bool = False
    delay: Optional[Duration] = None


class CampaignDefinition(BaseModel):
    """
    A published, versioned campaign. Everything except `status` is frozen once
    stored; edits are published as a new version.
    """
    campaign_id: str = Field(default_factory=lambda: f"campaign_{uuid.uuid4().hex[:12]}")
    version: int = 0
    name: str = Field(..., examples=["Fall intake nurture"])
    campaign_type: CampaignType = "custom"
    description: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)
    triggers: List[TriggerDefinition] = Field(default_factory=list)
    status: CampaignStatus = "draft"
    reenrollment: ReenrollmentPolicy = Field(default_factory=ReenrollmentPolicy)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    published_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "campaign_id": "campaign_fall_nurture",
                "name": "Fall intake nurture",
                "campaign_type": "nurture",
                "steps": [
                    {"kind": "send", "channel": "email", "content_ref": "welcome"},
                    {"kind": "wait", "duration": {"value": 2, "unit": "days"}},
                    {
                        "kind": "branch",
                        "condition": {"op": "event_occurred", "event_type": "email_opened"},
                        "on_true": 3,
                        "on_false": 4,
                    },
                    {"kind": "send", "channel": "email", "content_ref": "nudge", "next_step": 5},
                    {"kind": "send", "channel": "sms", "content_ref": "reminder"},
                    {"kind": "send", "channel": "email", "content_ref": "final"},
                ],
                "triggers": [{"kind": "lead_created"}],
            }
        }
    )

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def next_index(self, index: int) -> int:
        """Index that follows a non-branch step (explicit `next_step` wins)."""
        step = self.steps[index]
        explicit = getattr(step, "next_step", None)
        return explicit if explicit is not None else index + 1
