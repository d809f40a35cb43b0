import logging
from typing import TYPE_CHECKING, Optional

from app.db.store import ExecutionStore
from app.models.action_log import ActionLogEntry
from app.models.enrollment import Enrollment

if TYPE_CHECKING:
    from app.services.analytics import AnalyticsAggregator

logger = logging.getLogger(__name__)


class ActionJournal:
    """Appends action-log entries and feeds each stored entry to the live aggregator."""

    def __init__(self, store: ExecutionStore, aggregator: Optional["AnalyticsAggregator"] = None):
        self.store = store
        self.aggregator = aggregator

    async def record(self, enrollment: Enrollment, action_type: str, **fields) -> ActionLogEntry:
        entry = ActionLogEntry(
            campaign_id=enrollment.campaign_id,
            campaign_version=enrollment.campaign_version,
            enrollment_id=enrollment.enrollment_id,
            target_id=enrollment.target_id,
            action_type=action_type,
            **fields,
        )
        stored = await self.store.append_action(entry)
        if self.aggregator is not None:
            self.aggregator.apply(stored)
        logger.debug(
            f"[JOURNAL] #{stored.sequence} {action_type} campaign={stored.campaign_id} "
            f"enrollment={stored.enrollment_id} step={stored.step_index}"
        )
        return stored
