from datetime import timedelta
from typing import Literal

from pydantic import BaseModel, Field

DurationUnit = Literal["seconds", "minutes", "hours", "days", "weeks"]


class Duration(BaseModel):
    value: float = Field(..., gt=0, examples=[2])
    unit: DurationUnit = Field(default="days", examples=["days"])

    def to_timedelta(self) -> timedelta:
        return timedelta(**{self.unit: self.value})

    def __str__(self) -> str:
        return f"{self.value:g} {self.unit}"
