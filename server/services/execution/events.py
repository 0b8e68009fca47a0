"""Run and node transition events.

The coordinator publishes every transition to an EventBus; subscribers (the
trigger manager's logging, UI relays, tests) each get their own asyncio.Queue.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.logging import get_logger
from .models import utcnow

logger = get_logger(__name__)

RUN_STARTED = "run_started"
RUN_FINISHED = "run_finished"
NODE_STARTED = "node_started"
NODE_RETRY = "node_retry"
NODE_COMPLETED = "node_completed"
NODE_FAILED = "node_failed"


@dataclass
class ExecutionEvent:
    type: str
    run_id: str
    workflow_id: str
    node_id: Optional[str] = None
    status: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "status": self.status,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class EventBus:
    """Fan-out of ExecutionEvents to subscriber queues.

    publish() never blocks the coordinator: a full subscriber queue drops the
    event for that subscriber only.
    """

    def __init__(self, max_queue_size: int = 1000):
        self._subscribers: List[asyncio.Queue] = []
        self._max_queue_size = max_queue_size

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.append(queue)
        logger.debug("Event subscriber added", total=len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: ExecutionEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event dropped, subscriber queue full",
                               event_type=event.type, run_id=event.run_id)
