"""
Publish-time validation of campaign definitions.

Every problem found is collected so the author sees the whole list at once;
nothing here touches storage.
"""
import logging
from typing import Dict, List, Set

from app.core.exceptions import CampaignValidationError
from app.models.campaign import BranchStep, CampaignDefinition, SendStep, TaskStep

logger = logging.getLogger(__name__)

END = -1


def _successors(definition: CampaignDefinition, index: int) -> List[int]:
    """Indices reachable in one move from `index`; END stands for running past the last step."""
    step = definition.steps[index]
    n = definition.step_count
    if isinstance(step, BranchStep):
        targets = [step.on_true, step.on_false]
    elif isinstance(step, TaskStep) and step.timeout is not None and step.on_timeout is not None:
        targets = [definition.next_index(index), step.on_timeout]
    else:
        targets = [definition.next_index(index)]
    return [t if 0 <= t < n else END for t in targets]


def _check_references(definition: CampaignDefinition) -> List[str]:
    errors = []
    n = definition.step_count
    for index, step in enumerate(definition.steps):
        refs: Dict[str, object] = {}
        if isinstance(step, BranchStep):
            refs = {"on_true": step.on_true, "on_false": step.on_false}
        else:
            refs["next_step"] = step.next_step
            if isinstance(step, TaskStep):
                refs["on_timeout"] = step.on_timeout
        for field, target in refs.items():
            if target is None:
                continue
            if not 0 <= target < n:
                errors.append(f"Step {index} ({step.kind}): {field}={target} is outside [0, {n})")
    return errors


def _check_content(definition: CampaignDefinition) -> List[str]:
    errors = []
    for index, step in enumerate(definition.steps):
        if isinstance(step, SendStep) and not step.content_ref.strip():
            errors.append(f"Step {index} (send): content_ref must not be empty")
        if isinstance(step, TaskStep):
            if not step.assignee_role.strip():
                errors.append(f"Step {index} (task): assignee_role must not be empty")
            if step.on_timeout is not None and step.timeout is None:
                errors.append(f"Step {index} (task): on_timeout requires a timeout")
    return errors


def _check_triggers(definition: CampaignDefinition) -> List[str]:
    errors = []
    for trigger in definition.triggers:
        if trigger.kind == "event" and not trigger.event_type:
            errors.append("Trigger 'event' requires an event_type")
        if trigger.kind == "inactive" and (trigger.inactive_days is None or trigger.inactive_days <= 0):
            errors.append("Trigger 'inactive' requires a positive inactive_days")
    return errors


def _check_graph(definition: CampaignDefinition) -> List[str]:
    errors = []
    n = definition.step_count

    reachable: Set[int] = set()
    stack = [0]
    while stack:
        index = stack.pop()
        if index in reachable:
            continue
        reachable.add(index)
        stack.extend(t for t in _successors(definition, index) if t != END)

    for index in range(n):
        if index not in reachable:
            errors.append(f"Step {index} ({definition.steps[index].kind}) is unreachable from step 0")

    # Steps that can reach END, found by walking predecessors back from END.
    predecessors: Dict[int, List[int]] = {END: []}
    for index in range(n):
        for target in _successors(definition, index):
            predecessors.setdefault(target, []).append(index)
    finishing: Set[int] = set()
    stack = list(predecessors[END])
    while stack:
        index = stack.pop()
        if index in finishing:
            continue
        finishing.add(index)
        stack.extend(predecessors.get(index, []))

    trapped = sorted(reachable - finishing)
    if trapped:
        errors.append(f"Steps {trapped} form a cycle that can never reach the end of the campaign")
    return errors


def validate_definition(definition: CampaignDefinition) -> List[str]:
    """Return every problem found in the definition; an empty list means it can be published."""
    if not definition.steps:
        return ["Campaign must have at least one step"]

    errors = _check_references(definition) + _check_content(definition) + _check_triggers(definition)
    if not errors:
        # Graph checks assume every reference is in range.
        errors.extend(_check_graph(definition))
    return errors


def ensure_valid(definition: CampaignDefinition) -> None:
    errors = validate_definition(definition)
    if errors:
        logger.warning(f"[CAMPAIGN_VALIDATION] Campaign {definition.campaign_id} rejected: {errors}")
        raise CampaignValidationError(errors)
    logger.info(f"[CAMPAIGN_VALIDATION] Campaign {definition.campaign_id} validated ({definition.step_count} steps)")
