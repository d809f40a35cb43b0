from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from app.models.common import Duration


class EventOccurred(BaseModel):
    """True when an event of `event_type` was seen within `within` of now."""
    op: Literal["event_occurred"] = "event_occurred"
    event_type: str = Field(..., examples=["email_opened"])
    within: Optional[Duration] = None
    match: Dict[str, Any] = Field(default_factory=dict)


class NoEvent(BaseModel):
    """True when no event of `event_type` was seen within `within` of now."""
    op: Literal["no_event"] = "no_event"
    event_type: str = Field(..., examples=["sms_reply"])
    within: Optional[Duration] = None
    match: Dict[str, Any] = Field(default_factory=dict)


class AllOf(BaseModel):
    op: Literal["all"] = "all"
    conditions: List["Condition"]


class AnyOf(BaseModel):
    op: Literal["any"] = "any"
    conditions: List["Condition"]


class NotCondition(BaseModel):
    op: Literal["not"] = "not"
    condition: "Condition"


Condition = Annotated[
    Union[EventOccurred, NoEvent, AllOf, AnyOf, NotCondition],
    Field(discriminator="op"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
NotCondition.model_rebuild()
