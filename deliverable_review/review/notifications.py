"""
Webhook notifier for review events.

Delivery is fire-and-forget: events go onto a bounded queue drained by a
daemon thread that POSTs each one as JSON. When the queue is full the event
is dropped with a warning; failed deliveries are logged and not retried.
"""

import queue
import threading
from typing import Optional

import httpx
import structlog

from .events import Event

logger = structlog.get_logger()

_STOP = object()


class WebhookNotifier:
    """Forwards published events to an HTTP endpoint.

    Usage:
        notifier = WebhookNotifier("https://hooks.example.com/review")
        notifier.start()
        publisher.subscribe(notifier)
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        queue_size: int = 1000,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    def __call__(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "webhook_queue_full",
                event_id=event.id,
                event_type=event.type,
                dropped=self.dropped,
            )

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._run, name="review-webhook-notifier", daemon=True
        )
        self._thread.start()
        logger.info("webhook_notifier_started", url=self.url)

    def stop(self, timeout: float = 5.0) -> None:
        """Drain what is queued, then stop the worker thread."""
        if not self._thread:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        self._client.close()
        logger.info(
            "webhook_notifier_stopped",
            delivered=self.delivered,
            failed=self.failed,
            dropped=self.dropped,
        )

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.deliver(item)
            finally:
                self._queue.task_done()

    def deliver(self, event: Event) -> bool:
        try:
            response = self._client.post(self.url, json=event.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.failed += 1
            logger.warning(
                "webhook_delivery_failed",
                event_id=event.id,
                event_type=event.type,
                error=str(e),
            )
            return False
        self.delivered += 1
        logger.debug("webhook_delivered", event_id=event.id, event_type=event.type)
        return True

    def flush(self) -> None:
        """Block until every queued event has been handled."""
        self._queue.join()
