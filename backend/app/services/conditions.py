"""
Branch condition evaluator.

Pure functions over a target's engagement log: same condition, events and
`now` always give the same answer.
"""
from datetime import datetime
from typing import Iterable, List, Sequence

from app.models.conditions import AllOf, AnyOf, EventOccurred, NoEvent, NotCondition
from app.models.engagement import EngagementEvent


def _matches(event: EngagementEvent, condition, now: datetime) -> bool:
    if event.event_type != condition.event_type or event.occurred_at > now:
        return False
    if condition.within is not None and event.occurred_at < now - condition.within.to_timedelta():
        return False
    return all(event.metadata.get(key) == value for key, value in condition.match.items())


def evaluate(condition, events: Sequence[EngagementEvent], now: datetime) -> bool:
    if isinstance(condition, EventOccurred):
        return any(_matches(e, condition, now) for e in events)
    if isinstance(condition, NoEvent):
        return not any(_matches(e, condition, now) for e in events)
    if isinstance(condition, AllOf):
        return all(evaluate(c, events, now) for c in condition.conditions)
    if isinstance(condition, AnyOf):
        return any(evaluate(c, events, now) for c in condition.conditions)
    if isinstance(condition, NotCondition):
        return not evaluate(condition.condition, events, now)
    raise ValueError(f"Unknown condition: {condition!r}")


def referenced_event_types(condition) -> List[str]:
    """Event types the condition depends on, in first-seen order."""
    found: List[str] = []

    def walk(node) -> None:
        if isinstance(node, (EventOccurred, NoEvent)):
            if node.event_type not in found:
                found.append(node.event_type)
        elif isinstance(node, (AllOf, AnyOf)):
            for child in node.conditions:
                walk(child)
        elif isinstance(node, NotCondition):
            walk(node.condition)

    walk(condition)
    return found


def references_any(condition, event_types: Iterable[str]) -> bool:
    wanted = set(event_types)
    return any(t in wanted for t in referenced_event_types(condition))
