"""
In-process publish/subscribe bus for progress events.

The pipeline core publishes ProgressEvents and never formats or prints
them itself. Observers (the LoggingObserver below, a CLI progress printer,
test collectors) subscribe by topic, or to "*" for everything.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

WILDCARD = "*"

JOB_STATE = "job.state"
SHEET_READ = "sheet.read"
STAGE_APPLIED = "stage.applied"
OUTPUT_WRITTEN = "output.written"
JOB_FAILED = "job.failed"


class ProgressEvent(BaseModel):
    """
    A structured progress notification.

    Attributes:
        topic: One of the topic constants of this module.
        job_id: Job that emitted the event.
        payload: Topic-specific fields.
        timestamp: Wall-clock time of publication.
    """

    topic: str
    job_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


Subscriber = Callable[[ProgressEvent], None]


class EventBus:
    """Thread-safe topic-based event bus."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(topic, []).append(subscriber)

    def unsubscribe(self, topic: str, subscriber: Subscriber) -> None:
        with self._lock:
            subscribers = self._subscribers.get(topic, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)
            if not subscribers:
                self._subscribers.pop(topic, None)

    def publish(self, event: ProgressEvent) -> None:
        """
        Deliver an event to topic subscribers, then wildcard subscribers.

        Observers must not break the job: a failing subscriber is logged
        and skipped.
        """
        with self._lock:
            targets = list(self._subscribers.get(event.topic, []))
            targets += self._subscribers.get(WILDCARD, [])
        for subscriber in targets:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Progress subscriber failed for topic %s", event.topic)

    def emit(self, topic: str, job_id: str | None = None, **payload: Any) -> None:
        self.publish(ProgressEvent(topic=topic, job_id=job_id, payload=payload))


class LoggingObserver:
    """Subscriber that writes every event to a logger."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.INFO) -> None:
        self.log = log or logger
        self.level = level

    def __call__(self, event: ProgressEvent) -> None:
        fields = " ".join(f"{k}={v}" for k, v in event.payload.items())
        level = logging.ERROR if event.topic == JOB_FAILED else self.level
        self.log.log(level, "%s %s", event.topic, fields)

    def attach(self, bus: EventBus) -> "LoggingObserver":
        bus.subscribe(WILDCARD, self)
        return self
