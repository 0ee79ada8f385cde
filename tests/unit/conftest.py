"""Shared fixtures: in-memory store, manual clock and a recording notification channel."""

from datetime import UTC, datetime

import pytest

from jml_workflow.core.clock import ManualClock
from jml_workflow.core.config import EngineConfig
from jml_workflow.notifications.channel import DeliveryStatus, NotificationChannel, NotificationService
from jml_workflow.safeguards.dead_letter import DeadLetterQueue
from jml_workflow.safeguards.retry_handler import RetryOptions
from jml_workflow.scheduling.scheduler import Scheduler
from jml_workflow.storage.memory import InMemoryStore
from jml_workflow.workflow.conditions import ConditionRegistry
from jml_workflow.workflow.engine import WorkflowEngine


class RecordingChannel(NotificationChannel):
    """Captures deliveries. Set `failures` to make the next N deliveries fail."""

    def __init__(self):
        self.sent = []
        self.failures = 0
        self.status = DeliveryStatus.DELIVERED

    def deliver(self, recipients, subject, body, priority):
        if self.failures > 0:
            self.failures -= 1
            return DeliveryStatus.FAILED
        self.sent.append({
            "recipients": list(recipients),
            "subject": subject,
            "body": body,
            "priority": priority,
        })
        return self.status

    def to(self, recipient):
        return [n for n in self.sent if recipient in n["recipients"]]

    def subjects(self):
        return [n["subject"] for n in self.sent]


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 3, 4, 9, 0, tzinfo=UTC))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def queue(store, clock):
    return DeadLetterQueue(store, clock)


@pytest.fixture
def notifications(channel, queue):
    return NotificationService(channel, queue, RetryOptions(max_retries=1), sleep=lambda s: None)


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def engine(store, clock, config, notifications, queue):
    return WorkflowEngine(store, clock=clock, config=config, notifications=notifications, dead_letters=queue)


@pytest.fixture
def scheduler(engine):
    return Scheduler(engine)


@pytest.fixture(autouse=True)
def _reset_condition_registry():
    yield
    ConditionRegistry.reset()
