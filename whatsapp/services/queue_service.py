import logging
import threading
import time
from collections import deque
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from whatsapp.models import QueuedJob

logger = logging.getLogger(__name__)

LANES = [name for name, _ in QueuedJob.QUEUE_CHOICES]


class RateLimiter:
    """Admits at most ``max_per_window`` events in any rolling ``window`` seconds."""

    def __init__(self, max_per_window: int, window: float = 1.0, clock=time.monotonic):
        self.max_per_window = max_per_window
        self.window = window
        self._clock = clock
        self._events = deque()
        self._lock = threading.Lock()

    def _expire(self, now):
        while self._events and now - self._events[0] >= self.window:
            self._events.popleft()

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._events) < self.max_per_window:
                self._events.append(now)
                return True
            return False

    def wait_time(self) -> float:
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._events) < self.max_per_window:
                return 0.0
            return self.window - (now - self._events[0])

    def acquire(self):
        while not self.try_acquire():
            time.sleep(max(self.wait_time(), 0.01))


class JobQueue:
    @staticmethod
    def enqueue(
        queue_name: str,
        job_type: str,
        payload: dict,
        idempotency_key: str,
        delay: timedelta = None,
    ):
        """
        Durably record a job on ``queue_name``.

        Returns the new job, or ``None`` when a job with the same idempotency
        key is still waiting or running on that lane.
        """
        if queue_name not in LANES:
            raise ValueError(f"Unknown queue '{queue_name}'. Must be one of {LANES}")

        run_at = timezone.now() + delay if delay else timezone.now()
        try:
            with transaction.atomic():
                duplicate = QueuedJob.objects.filter(
                    queue_name=queue_name,
                    idempotency_key=idempotency_key,
                    status__in=QueuedJob.PENDING_STATUSES,
                ).exists()
                if duplicate:
                    logger.info(
                        "Skipping duplicate %s job %s", queue_name, idempotency_key
                    )
                    return None

                job = QueuedJob.objects.create(
                    queue_name=queue_name,
                    job_type=job_type,
                    idempotency_key=idempotency_key,
                    payload=payload,
                    max_attempts=settings.DELIVERY["JOB_MAX_ATTEMPTS"],
                    run_at=run_at,
                )
        except IntegrityError:
            # lost the race against a concurrent enqueue of the same key
            logger.info("Skipping duplicate %s job %s", queue_name, idempotency_key)
            return None

        logger.debug("Queued %s job %s (%s)", queue_name, job.id, idempotency_key)
        return job

    @staticmethod
    def pending_count(queue_name: str) -> int:
        return QueuedJob.objects.filter(
            queue_name=queue_name, status__in=QueuedJob.PENDING_STATUSES
        ).count()

    @staticmethod
    def claim_next(queue_name: str):
        """Atomically move the oldest due job of a lane to active."""
        now = timezone.now()
        candidates = list(
            QueuedJob.objects.filter(
                queue_name=queue_name,
                status=QueuedJob.STATUS_WAITING,
                run_at__lte=now,
            )
            .order_by("run_at", "id")
            .values_list("pk", flat=True)[:10]
        )
        for pk in candidates:
            claimed = QueuedJob.objects.filter(
                pk=pk, status=QueuedJob.STATUS_WAITING
            ).update(
                status=QueuedJob.STATUS_ACTIVE,
                started_at=now,
                attempts_made=F("attempts_made") + 1,
            )
            if claimed:
                return QueuedJob.objects.get(pk=pk)
        return None

    @staticmethod
    def complete(job: QueuedJob):
        QueuedJob.objects.filter(pk=job.pk).update(
            status=QueuedJob.STATUS_COMPLETED,
            finished_at=timezone.now(),
            last_error=None,
        )
        logger.info("%s job %s completed", job.queue_name, job.id)

    @staticmethod
    def backoff_delay(attempts_made: int) -> timedelta:
        base = settings.DELIVERY["JOB_BACKOFF_SECONDS"]
        return timedelta(seconds=base * (2 ** max(attempts_made - 1, 0)))

    @classmethod
    def fail(cls, job: QueuedJob, error: Exception, retryable: bool = True) -> bool:
        """
        Record a failed attempt. Returns True when another attempt was scheduled.
        """
        now = timezone.now()
        message = f"{type(error).__name__}: {error}"

        if retryable and job.attempts_made < job.max_attempts:
            delay = cls.backoff_delay(job.attempts_made)
            QueuedJob.objects.filter(pk=job.pk).update(
                status=QueuedJob.STATUS_WAITING,
                run_at=now + delay,
                last_error=message,
            )
            logger.warning(
                "%s job %s failed (attempt %s/%s), retrying in %ss: %s",
                job.queue_name,
                job.id,
                job.attempts_made,
                job.max_attempts,
                int(delay.total_seconds()),
                message,
            )
            return True

        QueuedJob.objects.filter(pk=job.pk).update(
            status=QueuedJob.STATUS_FAILED,
            finished_at=now,
            last_error=message,
        )
        logger.error(
            "%s job %s (%s) failed after %s attempts: %s",
            job.queue_name,
            job.id,
            job.idempotency_key,
            job.attempts_made,
            message,
        )
        return False

    @staticmethod
    def requeue_stalled(older_than: timedelta = timedelta(minutes=30)) -> int:
        """
        Return jobs stuck in active (worker died mid-run) to the waiting state.

        A stalled job that already used its last attempt is failed instead.
        """
        now = timezone.now()
        stalled = QueuedJob.objects.filter(
            status=QueuedJob.STATUS_ACTIVE, started_at__lt=now - older_than
        )
        exhausted = stalled.filter(attempts_made__gte=F("max_attempts")).update(
            status=QueuedJob.STATUS_FAILED,
            finished_at=now,
            last_error="Stalled: worker stopped before finishing the last attempt",
        )
        if exhausted:
            logger.error("Failed %s stalled jobs with no attempts left", exhausted)

        count = stalled.filter(attempts_made__lt=F("max_attempts")).update(
            status=QueuedJob.STATUS_WAITING, run_at=now
        )
        if count:
            logger.warning("Re-queued %s stalled jobs", count)
        return count

    @staticmethod
    def purge_finished_jobs(max_age_hours: int = None) -> dict:
        """Drop old finished jobs and cap the history kept per lane."""
        delivery = settings.DELIVERY
        if max_age_hours is None:
            max_age_hours = delivery["JOB_RETENTION_HOURS"]
        cutoff = timezone.now() - timedelta(hours=max_age_hours)
        removed = {"completed": 0, "failed": 0}

        for status, keep in (
            (QueuedJob.STATUS_COMPLETED, delivery["JOB_KEEP_COMPLETED"]),
            (QueuedJob.STATUS_FAILED, delivery["JOB_KEEP_FAILED"]),
        ):
            deleted, _ = QueuedJob.objects.filter(
                status=status, finished_at__lt=cutoff
            ).delete()
            removed[status] += deleted

            for lane in LANES:
                overflow = list(
                    QueuedJob.objects.filter(queue_name=lane, status=status)
                    .order_by("-finished_at", "-id")
                    .values_list("pk", flat=True)[keep:]
                )
                if overflow:
                    deleted, _ = QueuedJob.objects.filter(pk__in=overflow).delete()
                    removed[status] += deleted

        if removed["completed"] or removed["failed"]:
            logger.info(
                "Cleaned up %s completed and %s failed jobs older than %s hours",
                removed["completed"],
                removed["failed"],
                max_age_hours,
            )
        return removed
