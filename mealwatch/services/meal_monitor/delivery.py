"""Check-in delivery: notification transports and the confirmation worker.

Sending a check-in hands the message to a transport. Confirmation that it
reached the student arrives later, so it is modeled as a queued task
rather than a bare timer:
- each check-in has at most one live confirmation task
- tasks can be cancelled before they run
- a failing confirmation is retried a bounded number of times
- the completion callback is a conditional ``sent -> delivered``
  transition, so late or duplicate confirmations are no-ops
"""
import heapq
import itertools
import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from mealwatch.shared.models import DeliveryMethod

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Transport could not hand the message over."""
    pass


class NotificationTransport(ABC):
    """External ``deliver(message, recipient_token)`` capability."""

    method: DeliveryMethod = DeliveryMethod.APP_NOTIFICATION

    @abstractmethod
    def deliver(self, message: str, recipient_token: str) -> str:
        """Send a message.

        Args:
            message: Text to send
            recipient_token: Opaque recipient (the anonymized ID)

        Returns:
            Transport receipt identifier

        Raises:
            DeliveryError: If the message could not be sent
        """


class LoggingTransport(NotificationTransport):
    """Development transport: records the send in the log only."""

    def deliver(self, message: str, recipient_token: str) -> str:
        receipt = f"log_{uuid.uuid4().hex[:12]}"
        logger.info(
            "CHECK_IN_NOTIFICATION_LOGGED",
            extra={
                "recipient_token": recipient_token,
                "receipt": receipt,
                "message_length": len(message),
            }
        )
        return receipt


class SnsTransport(NotificationTransport):
    """Publishes check-ins to an SNS topic consumed by the app push service."""

    def __init__(
        self,
        topic_arn: str,
        region: Optional[str] = None,
    ):
        self.topic_arn = topic_arn
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._sns_client = None

        logger.info("SNS_TRANSPORT_INITIALIZED", extra={"topic_arn": topic_arn})

    @property
    def sns_client(self):
        """Lazy initialization of SNS client."""
        if self._sns_client is None:
            import boto3
            self._sns_client = boto3.client("sns", region_name=self.region)
        return self._sns_client

    def deliver(self, message: str, recipient_token: str) -> str:
        try:
            response = self.sns_client.publish(
                TopicArn=self.topic_arn,
                Message=message,
                MessageAttributes={
                    "recipient_token": {
                        "DataType": "String",
                        "StringValue": recipient_token,
                    },
                    "delivery_method": {
                        "DataType": "String",
                        "StringValue": self.method.value,
                    },
                },
            )
        except Exception as e:
            raise DeliveryError(str(e)) from e

        return response["MessageId"]


@dataclass(order=True)
class DeliveryTask:
    """Pending confirmation for one check-in."""
    due_at: float
    sequence: int
    check_in_id: str = field(compare=False)
    attempts: int = field(default=0, compare=False)
    cancelled: bool = field(default=False, compare=False)


class DeliveryWorker:
    """Queue of delivery-confirmation tasks.

    Use ``run_pending`` to drain due tasks synchronously (tests, cron) or
    ``start`` to process them on a daemon thread.
    """

    def __init__(
        self,
        on_confirm: Optional[Callable[[str], bool]] = None,
        delay_seconds: float = 1.0,
        max_attempts: int = 3,
        poll_interval: float = 0.25,
        time_source: Callable[[], float] = time.monotonic,
    ):
        """Initialize worker.

        Args:
            on_confirm: Completion callback taking a check-in ID
            delay_seconds: Delay between send and confirmation
            max_attempts: Attempts per task before it is dropped
            poll_interval: Sleep between polls of the background thread
            time_source: Monotonic clock (injected for testing)
        """
        self.on_confirm = on_confirm
        self.delay_seconds = delay_seconds
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self._time = time_source
        self._queue: List[DeliveryTask] = []
        self._live: Dict[str, DeliveryTask] = {}
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def bind(self, on_confirm: Callable[[str], bool]) -> None:
        self.on_confirm = on_confirm

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._live)

    def schedule_confirmation(self, check_in_id: str) -> DeliveryTask:
        """Queue a confirmation; an existing live task is reused."""
        with self._lock:
            existing = self._live.get(check_in_id)
            if existing is not None:
                return existing
            task = DeliveryTask(
                due_at=self._time() + self.delay_seconds,
                sequence=next(self._counter),
                check_in_id=check_in_id,
            )
            self._live[check_in_id] = task
            heapq.heappush(self._queue, task)

        logger.debug("DELIVERY_CONFIRMATION_SCHEDULED", extra={"check_in_id": check_in_id})
        return task

    def cancel(self, check_in_id: str) -> bool:
        """Cancel the live task for a check-in, if any."""
        with self._lock:
            task = self._live.pop(check_in_id, None)
            if task is None:
                return False
            task.cancelled = True

        logger.info("DELIVERY_CONFIRMATION_CANCELLED", extra={"check_in_id": check_in_id})
        return True

    def run_pending(self, now: Optional[float] = None) -> int:
        """Run every task that is due.

        Returns:
            Number of tasks that completed (confirmed or found already done)
        """
        current = self._time() if now is None else now
        completed = 0

        while True:
            with self._lock:
                if not self._queue or self._queue[0].due_at > current:
                    break
                task = heapq.heappop(self._queue)
                if task.cancelled:
                    continue
                task.attempts += 1

            if self._execute(task):
                completed += 1

        return completed

    def _execute(self, task: DeliveryTask) -> bool:
        try:
            changed = self.on_confirm(task.check_in_id) if self.on_confirm else False
        except Exception as e:
            logger.error(
                "DELIVERY_CONFIRMATION_FAILED",
                extra={
                    "check_in_id": task.check_in_id,
                    "attempt": task.attempts,
                    "error": str(e),
                }
            )
            self._retry_or_drop(task)
            return False

        with self._lock:
            if self._live.get(task.check_in_id) is task:
                del self._live[task.check_in_id]

        logger.info(
            "DELIVERY_CONFIRMATION_COMPLETED",
            extra={"check_in_id": task.check_in_id, "status_changed": bool(changed)}
        )
        return True

    def _retry_or_drop(self, task: DeliveryTask) -> None:
        with self._lock:
            if task.cancelled or self._live.get(task.check_in_id) is not task:
                return
            if task.attempts >= self.max_attempts:
                del self._live[task.check_in_id]
                logger.warning(
                    "DELIVERY_CONFIRMATION_ABANDONED",
                    extra={"check_in_id": task.check_in_id, "attempts": task.attempts}
                )
                return
            task.due_at = self._time() + self.delay_seconds
            task.sequence = next(self._counter)
            heapq.heappush(self._queue, task)

    def start(self) -> None:
        """Process tasks on a background daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="delivery-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info("DELIVERY_WORKER_STARTED")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("DELIVERY_WORKER_STOPPED")

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self.poll_interval)
