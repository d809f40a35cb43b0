"""
Analytics aggregator: a read-side projection of the action log.

Live updates and a full rebuild run the same `_fold` over entries, so a
replay of the log always yields the same rollup as the live view.
"""
import logging
from collections import Counter
from typing import Dict, Iterable, List, Set

from pydantic import BaseModel, Field

from app.db.store import ExecutionStore
from app.models.action_log import ActionLogEntry
from app.models.enrollment import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

STEP_COMPLETING_ACTIONS = {"executed", "wait_elapsed", "task_resolved"}


class StepFunnel(BaseModel):
    step_index: int
    entered: int = 0
    completed: int = 0
    branched_away: int = 0


class CampaignSummary(BaseModel):
    campaign_id: str
    total_actions: int = 0
    unique_targets: int = 0
    actions_by_type: Dict[str, int] = Field(default_factory=dict)
    outcomes: Dict[str, int] = Field(default_factory=dict)
    funnel: List[StepFunnel] = Field(default_factory=list)
    recent_actions: List[ActionLogEntry] = Field(default_factory=list)
    last_sequence: int = 0


class _Rollup:
    def __init__(self, campaign_id: str, recent_limit: int):
        self.campaign_id = campaign_id
        self.recent_limit = recent_limit
        self.total_actions = 0
        self.targets: Set[str] = set()
        self.actions_by_type: Counter = Counter()
        self.outcomes: Counter = Counter({"enrolled": 0, "completed": 0, "failed": 0, "cancelled": 0})
        self.funnel: Dict[int, StepFunnel] = {}
        self.recent: List[ActionLogEntry] = []
        # Highest sequence with no gaps below it, plus anything applied above it.
        self.watermark = 0
        self.ahead: Set[int] = set()

    def seen(self, sequence: int) -> bool:
        return sequence <= self.watermark or sequence in self.ahead

    def mark(self, sequence: int) -> None:
        self.ahead.add(sequence)
        while self.watermark + 1 in self.ahead:
            self.watermark += 1
            self.ahead.discard(self.watermark)

    def _step(self, index: int) -> StepFunnel:
        if index not in self.funnel:
            self.funnel[index] = StepFunnel(step_index=index)
        return self.funnel[index]

    def fold(self, entry: ActionLogEntry) -> None:
        self.total_actions += 1
        self.targets.add(entry.target_id)
        self.actions_by_type[entry.action_type] += 1

        if entry.action_type == "enrolled":
            self.outcomes["enrolled"] += 1
        elif entry.action_type == "status_changed" and entry.to_status in TERMINAL_STATUSES:
            self.outcomes[entry.to_status] += 1

        if entry.step_index is not None:
            if entry.action_type == "step_entered":
                self._step(entry.step_index).entered += 1
            elif entry.action_type in STEP_COMPLETING_ACTIONS:
                self._step(entry.step_index).completed += 1
            elif entry.action_type == "branch_evaluated":
                target = entry.metadata.get("target")
                if target == entry.step_index + 1:
                    self._step(entry.step_index).completed += 1
                else:
                    self._step(entry.step_index).branched_away += 1

        self.recent.append(entry)
        self.recent.sort(key=lambda e: e.sequence)
        if len(self.recent) > self.recent_limit:
            del self.recent[: len(self.recent) - self.recent_limit]

    def snapshot(self) -> CampaignSummary:
        return CampaignSummary(
            campaign_id=self.campaign_id,
            total_actions=self.total_actions,
            unique_targets=len(self.targets),
            actions_by_type=dict(sorted(self.actions_by_type.items())),
            outcomes=dict(sorted(self.outcomes.items())),
            funnel=[self.funnel[i].model_copy() for i in sorted(self.funnel)],
            recent_actions=[e.model_copy(deep=True) for e in reversed(self.recent)],
            last_sequence=max([self.watermark, *self.ahead]),
        )


class AnalyticsAggregator:

    def __init__(self, recent_limit: int = 50):
        self.recent_limit = recent_limit
        self._rollups: Dict[str, _Rollup] = {}

    def _rollup(self, campaign_id: str) -> _Rollup:
        if campaign_id not in self._rollups:
            self._rollups[campaign_id] = _Rollup(campaign_id, self.recent_limit)
        return self._rollups[campaign_id]

    def apply(self, entry: ActionLogEntry) -> bool:
        """Fold one stored entry into the live view. Entries already applied are ignored."""
        rollup = self._rollup(entry.campaign_id)
        if rollup.seen(entry.sequence):
            return False
        rollup.mark(entry.sequence)
        rollup.fold(entry)
        return True

    async def refresh(self, store: ExecutionStore, campaign_id: str) -> int:
        """Catch up with entries appended by other processes."""
        rollup = self._rollup(campaign_id)
        applied = 0
        for entry in await store.list_actions(campaign_id, after_sequence=rollup.watermark):
            if self.apply(entry):
                applied += 1
        if applied:
            logger.info(f"[ANALYTICS] Caught up {applied} entries for campaign {campaign_id}")
        return applied

    def summary(self, campaign_id: str) -> CampaignSummary:
        return self._rollup(campaign_id).snapshot()

    def rebuild(self, entries: Iterable[ActionLogEntry]) -> Dict[str, CampaignSummary]:
        """Recompute rollups from scratch and replace the live view with them."""
        rebuilt = self.replay(entries, self.recent_limit)
        self._rollups = rebuilt
        logger.info(f"[ANALYTICS] Rebuilt rollups for {len(rebuilt)} campaigns")
        return {cid: rollup.snapshot() for cid, rollup in rebuilt.items()}

    @staticmethod
    def replay(entries: Iterable[ActionLogEntry], recent_limit: int = 50) -> Dict[str, _Rollup]:
        rollups: Dict[str, _Rollup] = {}
        for entry in sorted(entries, key=lambda e: (e.campaign_id, e.sequence)):
            rollup = rollups.setdefault(entry.campaign_id, _Rollup(entry.campaign_id, recent_limit))
            if rollup.seen(entry.sequence):
                continue
            rollup.mark(entry.sequence)
            rollup.fold(entry)
        return rollups
