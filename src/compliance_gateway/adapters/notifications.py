"""Notification delivery and bounded background dispatch.

- LoggingNotificationService - INotificationService that emits structured log events
- NotificationDispatcher     - bounded asyncio.Queue drained by a fixed worker pool

The dispatcher is the only way notification work leaves the evaluation
critical path. It never blocks the submitter, never raises to it, runs each
job at most once, and drops jobs when the queue is full rather than growing
without bound.
"""

import asyncio

from compliance_gateway.core.interfaces import NotificationJob
from compliance_gateway.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_WORKERS = 2
_DEFAULT_QUEUE_SIZE = 100


class LoggingNotificationService:
    """Notification service that records notifications as log events.

    Stands in for email or chat delivery. Delivery channels plug in by
    implementing the same two coroutine methods.
    """

    async def send_compliance_notification(
        self,
        application_name: str,
        environment: str,
        passed: bool,
        violations: list[str],
        recipients: list[str],
    ) -> None:
        """Notify recipients of a compliance decision.

        Args:
            application_name: Application that was evaluated.
            environment: Evaluated environment name.
            passed: Whether the evaluation passed.
            violations: Violation messages from the decision.
            recipients: Notification recipients (owner email addresses).
        """
        logger.info(
            "Compliance notification",
            application_name=application_name,
            environment=environment,
            passed=passed,
            violations=violations,
            recipients=recipients,
        )

    async def send_critical_vulnerability_alert(
        self,
        application_name: str,
        environment: str,
        critical_count: int,
        high_count: int,
        recipients: list[str],
    ) -> None:
        """Alert recipients that critical or high vulnerabilities were found."""
        logger.warning(
            "Critical vulnerability alert",
            application_name=application_name,
            environment=environment,
            critical_count=critical_count,
            high_count=high_count,
            recipients=recipients,
        )


class NotificationDispatcher:
    """Bounded best-effort dispatcher for notification jobs.

    Jobs are zero-argument coroutine functions. ``submit`` enqueues without
    waiting; a fixed pool of worker tasks awaits each job once. Failures are
    logged and discarded.

    Args:
        workers: Number of worker tasks draining the queue.
        queue_size: Maximum pending jobs; further submissions are dropped.
    """

    def __init__(self, workers: int = _DEFAULT_WORKERS, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        if workers < 1:
            raise ValueError("NotificationDispatcher needs at least one worker")
        if queue_size < 1:
            raise ValueError("NotificationDispatcher queue size must be positive")
        self._worker_count = workers
        self._queue: asyncio.Queue[tuple[NotificationJob, str]] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task[None]] = []

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the worker pool. Called from the lifespan startup handler."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._run_worker(index), name=f"notification-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info(
            "Notification dispatcher started",
            workers=self._worker_count,
            queue_size=self._queue.maxsize,
        )

    async def stop(self) -> None:
        """Cancel the workers. Jobs still queued are discarded."""
        if not self._workers:
            return
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        logger.info("Notification dispatcher stopped", dropped_jobs=dropped)

    def submit(self, job: NotificationJob, description: str = "notification") -> bool:
        """Enqueue a job without blocking.

        Args:
            job: Zero-argument coroutine function to run once.
            description: Short label used in logs.

        Returns:
            True if queued, False if the job was dropped.
        """
        if not self._workers:
            logger.warning("Notification dispatcher not running, job dropped", job=description)
            return False
        try:
            self._queue.put_nowait((job, description))
        except asyncio.QueueFull:
            logger.warning(
                "Notification queue full, job dropped",
                job=description,
                queue_size=self._queue.maxsize,
            )
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _run_worker(self, index: int) -> None:
        while True:
            job, description = await self._queue.get()
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Notification job failed", job=description, worker=index)
            finally:
                self._queue.task_done()
