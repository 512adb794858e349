"""Progress notifications for deployments.

Listeners are plain callables registered on an :class:`EventBus`.  They
run synchronously on the deploying thread, so they should be quick; a
consumer on another thread can instead take a :meth:`EventBus.queue` and
drain it at its own pace.  Notification is best-effort: a listener that
raises is logged and never affects the deployment.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEPLOYMENT_STARTED = "deployment-started"
DEPLOYMENT_COMPLETED = "deployment-completed"
DEPLOYMENT_FAILED = "deployment-failed"
STEP_STARTED = "step-started"
STEP_COMPLETED = "step-completed"
STEP_FAILED = "step-failed"
STEP_SKIPPED = "step-skipped"
TRAFFIC_SHIFTED = "traffic-shifted"
ROLLBACK_COMPLETED = "rollback-completed"


@dataclass(frozen=True)
class DeploymentEvent:
    name: str
    deployment_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[DeploymentEvent], None]


class EventBus:
    """Ordered list of listeners notified for every event."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Listener:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def queue(self, maxsize: int = 1024) -> queue.Queue[DeploymentEvent]:
        """Subscribe a bounded queue and return it.

        When the queue is full new events are dropped with a debug log,
        so a slow consumer never blocks a deployment.
        """
        q: queue.Queue[DeploymentEvent] = queue.Queue(maxsize=maxsize)

        def _put(event: DeploymentEvent) -> None:
            try:
                q.put_nowait(event)
            except queue.Full:
                logger.debug("Event queue full, dropping %s", event.name)

        self.subscribe(_put)
        return q

    def emit(
        self,
        name: str,
        deployment_id: str | None = None,
        **payload: Any,
    ) -> DeploymentEvent:
        event = DeploymentEvent(name=name, deployment_id=deployment_id, payload=payload)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning("Listener %r failed for %s", listener, name, exc_info=True)
        return event
