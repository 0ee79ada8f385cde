"""Notification delivery collaborator and the retrying service around it."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..errors.exceptions import TransientDeliveryError
from ..safeguards.dead_letter import DeadLetterQueue, ReplayOutcome
from ..safeguards.retry_handler import RetryOptions, RetryResult, retry_with_dlq

logger = logging.getLogger(__name__)

NOTIFICATION_OPERATION = "notification"


class NotificationPriority(str, Enum):
    LOW = "Low"
    NORMAL = "Normal"
    HIGH = "High"
    URGENT = "Urgent"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    FAILED = "failed"


class NotificationChannel(ABC):
    """Transport for email/chat/etc. Delivery mechanics live outside the engine."""

    @abstractmethod
    def deliver(
        self,
        recipients: List[str],
        subject: str,
        body: str,
        priority: NotificationPriority,
    ) -> DeliveryStatus:
        pass


class LoggingChannel(NotificationChannel):
    """Writes notifications to the log. Default channel for the CLI."""

    def deliver(self, recipients, subject, body, priority) -> DeliveryStatus:
        logger.info(f"[{priority.value}] to {', '.join(recipients)}: {subject} - {body}")
        return DeliveryStatus.DELIVERED


@dataclass
class Notification:
    recipients: List[str]
    subject: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL


class NotificationService:
    """
    Sends notifications through a channel with in-call retries.

    A FAILED status or a raised error counts as a failed attempt; QUEUED is
    accepted. Exhausted deliveries land in the dead-letter queue and are
    replayed by the sweep via `replay`.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        queue: DeadLetterQueue,
        options: Optional[RetryOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.channel = channel
        self.queue = queue
        self.options = options or RetryOptions()
        self.sleep = sleep

    def _send(self, notification: Notification) -> DeliveryStatus:
        status = self.channel.deliver(
            notification.recipients,
            notification.subject,
            notification.body,
            notification.priority,
        )
        if status == DeliveryStatus.FAILED:
            raise TransientDeliveryError(
                f"Delivery to {', '.join(notification.recipients)} failed: {notification.subject}"
            )
        return status

    def notify(
        self,
        recipients: List[str],
        subject: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        instance_id: Optional[str] = None,
    ) -> RetryResult[DeliveryStatus]:
        recipients = [r for r in recipients if r]
        if not recipients:
            logger.debug(f"Notification '{subject}' has no recipients, skipping")
            return RetryResult(success=True, data=DeliveryStatus.DELIVERED, attempts=0)

        notification = Notification(recipients, subject, body, NotificationPriority(priority))
        return retry_with_dlq(
            lambda: self._send(notification),
            NOTIFICATION_OPERATION,
            payload={
                "recipients": recipients,
                "subject": subject,
                "body": body,
                "priority": notification.priority.value,
            },
            options=self.options,
            queue=self.queue,
            sleep=self.sleep,
            context={"instance_id": instance_id} if instance_id else None,
        )

    def replay(self, item) -> ReplayOutcome:
        """Dead-letter replayer for notification items: one direct attempt."""
        payload = item.payload
        notification = Notification(
            recipients=list(payload.get("recipients", [])),
            subject=payload.get("subject", ""),
            body=payload.get("body", ""),
            priority=NotificationPriority(payload.get("priority", NotificationPriority.NORMAL.value)),
        )
        try:
            status = self._send(notification)
        except Exception as e:
            return ReplayOutcome(success=False, error=str(e))
        return ReplayOutcome(success=True, note=f"Redelivered ({status.value})")
