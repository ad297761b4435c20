"""
Queue routing: job type -> queue family, attempt ceiling and priority weight.
"""

from dataclasses import dataclass
from enum import Enum

from portal_jobs.config.settings import Settings


class JobQueue(str, Enum):
    """Queue families, each polled by its own loop."""

    DEFAULT = "DEFAULT"
    HIGH = "HIGH"
    LOW = "LOW"
    BULK = "BULK"
    SCREENSHOT = "SCREENSHOT"


# Lower is more urgent
QUEUE_PRIORITY_WEIGHTS: dict[JobQueue, int] = {
    JobQueue.HIGH: 0,
    JobQueue.DEFAULT: 5,
    JobQueue.SCREENSHOT: 6,
    JobQueue.LOW: 7,
    JobQueue.BULK: 8,
}

# Known portal job types. Types missing here fall back to the handler's queue
# hint, then DEFAULT.
JOB_TYPE_QUEUES: dict[str, JobQueue] = {
    # Periodic maintenance
    "rss_feed_refresh": JobQueue.DEFAULT,
    "weather_refresh": JobQueue.DEFAULT,
    "listing_expiration": JobQueue.DEFAULT,
    "listing_reminder": JobQueue.DEFAULT,
    "promotion_expiration": JobQueue.DEFAULT,
    "rank_recalculation": JobQueue.DEFAULT,
    "inbound_email": JobQueue.DEFAULT,
    "account_merge_cleanup": JobQueue.DEFAULT,
    # Time-sensitive
    "stock_refresh": JobQueue.HIGH,
    "message_relay": JobQueue.HIGH,
    # Background
    "social_refresh": JobQueue.LOW,
    "link_health_check": JobQueue.LOW,
    "sitemap_generation": JobQueue.LOW,
    "click_rollup": JobQueue.LOW,
    # Metered / resource heavy
    "ai_tagging": JobQueue.BULK,
    "listing_image_processing": JobQueue.BULK,
    "listing_image_cleanup": JobQueue.BULK,
    "bulk_import": JobQueue.BULK,
    # Rendering pool
    "screenshot_capture": JobQueue.SCREENSHOT,
}


@dataclass(frozen=True)
class QueueRoute:
    queue: JobQueue
    max_attempts: int
    priority_weight: int


@dataclass(frozen=True)
class QueuePolicy:
    """Polling cadence and in-flight ceiling of one queue."""

    queue: JobQueue
    poll_interval_s: float
    max_in_flight: int
    priority_weight: int


class QueueRouter:
    """Classifies submissions into queues and exposes per-queue policies."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def route(self, job_type: str, queue_hint: str | JobQueue | None = None) -> QueueRoute:
        """Resolve the queue, default attempt ceiling and priority for a job type."""
        if queue_hint is not None:
            queue = JobQueue(queue_hint)
        else:
            queue = JOB_TYPE_QUEUES.get(job_type, JobQueue.DEFAULT)

        return QueueRoute(
            queue=queue,
            max_attempts=self.settings.queue_max_attempts.get(queue.value, 5),
            priority_weight=QUEUE_PRIORITY_WEIGHTS[queue],
        )

    def policy(self, queue: JobQueue) -> QueuePolicy:
        return QueuePolicy(
            queue=queue,
            poll_interval_s=self.settings.queue_poll_intervals.get(queue.value, 5.0),
            max_in_flight=self.settings.queue_max_in_flight.get(queue.value, 1),
            priority_weight=QUEUE_PRIORITY_WEIGHTS[queue],
        )

    def policies(self, queues: list[str] | None = None) -> list[QueuePolicy]:
        """Policies for the given queue names, most urgent first."""
        selected = [JobQueue(q) for q in (queues or [q.value for q in JobQueue])]
        return sorted(
            (self.policy(q) for q in selected), key=lambda p: p.priority_weight
        )


class QueueSlots:
    """Per-worker in-flight accounting against each queue's ceiling."""

    def __init__(self, router: QueueRouter):
        self.router = router
        self._in_flight: dict[JobQueue, int] = {q: 0 for q in JobQueue}

    def available(self, queue: JobQueue) -> int:
        return max(0, self.router.policy(queue).max_in_flight - self._in_flight[queue])

    def try_reserve(self, queue: JobQueue) -> bool:
        if self.available(queue) == 0:
            return False
        self._in_flight[queue] += 1
        return True

    def release(self, queue: JobQueue) -> None:
        self._in_flight[queue] = max(0, self._in_flight[queue] - 1)

    def in_flight(self, queue: JobQueue) -> int:
        return self._in_flight[queue]

    def total(self) -> int:
        return sum(self._in_flight.values())
