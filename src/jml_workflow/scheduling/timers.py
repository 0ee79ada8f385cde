"""Creation and cancellation of scheduled items (timers)."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.clock import Clock
from ..core.models import ScheduledActionType, ScheduledItem, ScheduledItemStatus
from ..storage.base import WorkflowStore

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_MESSAGE = "You have a pending workflow task."


class TimerService:
    """Writes ScheduledItems for the scheduler tick to pick up."""

    def __init__(self, store: WorkflowStore, clock: Clock):
        self.store = store
        self.clock = clock

    def schedule_item(
        self,
        instance_id: str,
        step_id: Optional[str],
        action_type: ScheduledActionType,
        scheduled_at: datetime,
        config: Optional[Dict[str, Any]] = None,
    ) -> ScheduledItem:
        item = ScheduledItem(
            instance_id=instance_id,
            step_id=step_id,
            action_type=action_type,
            scheduled_at=scheduled_at,
            config=config or {},
            created_at=self.clock.now(),
        )
        self.store.save_scheduled_item(item)
        logger.debug(
            f"Scheduled {action_type.value} for {instance_id}/{step_id} at {scheduled_at.isoformat()}"
        )
        return item

    def schedule_step_execution(self, instance_id, step_id, at, config=None) -> ScheduledItem:
        return self.schedule_item(instance_id, step_id, ScheduledActionType.EXECUTE_STEP, at, config)

    def schedule_reminder(self, instance_id, step_id, at, recipient, message=None) -> ScheduledItem:
        return self.schedule_item(
            instance_id, step_id, ScheduledActionType.REMINDER, at,
            {"recipient": recipient, "message": message or DEFAULT_REMINDER_MESSAGE},
        )

    def schedule_sla_warning(self, instance_id, step_id, at, escalate_to=None) -> ScheduledItem:
        return self.schedule_item(
            instance_id, step_id, ScheduledActionType.SLA_WARNING, at, {"escalate_to": escalate_to},
        )

    def schedule_sla_breach(self, instance_id, step_id, at, escalate_to=None) -> ScheduledItem:
        return self.schedule_item(
            instance_id, step_id, ScheduledActionType.SLA_BREACH, at, {"escalate_to": escalate_to},
        )

    def schedule_escalation(self, instance_id, step_id, at, recipients: List[str], message: str) -> ScheduledItem:
        return self.schedule_item(
            instance_id, step_id, ScheduledActionType.ESCALATION, at,
            {"recipients": recipients, "message": message},
        )

    def cancel_scheduled_items(self, instance_id: str, step_id: Optional[str] = None) -> int:
        """Cancel Pending items of an instance (optionally one step). Returns the count."""
        cancelled = 0
        for item in self.store.list_scheduled_items(
            instance_id=instance_id, step_id=step_id, status=ScheduledItemStatus.PENDING,
        ):
            item.status = ScheduledItemStatus.CANCELLED
            item.processed_at = self.clock.now()
            self.store.save_scheduled_item(item)
            cancelled += 1
        if cancelled:
            scope = f"{instance_id}/{step_id}" if step_id else instance_id
            logger.debug(f"Cancelled {cancelled} scheduled item(s) for {scope}")
        return cancelled
