import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from django.conf import settings
from django.db import close_old_connections

from courses.models import Course, Lesson, Quiz
from whatsapp.models import QueuedJob
from whatsapp.services.context_service import ReplyContextService
from whatsapp.services.messaging import PermanentDeliveryError, WhatsAppService
from whatsapp.services.queue_service import JobQueue, RateLimiter

logger = logging.getLogger(__name__)

LESSON_TEMPLATE = "new_lesson"
REMINDER_TEMPLATE = "lesson_reminder"
NOTIFICATION_TEMPLATE = "new_course"
WELCOME_TEMPLATE = "welcome_message"

LESSON_DONE_REPLY = "Done"
REMINDER_READY_REPLY = "Ready"
COURSE_START_REPLY = "Start"
REMINDER_LEAD_TEXT = "2 hours"


def _pause():
    """Give the provider time to deliver the previous message before the next one."""
    delay = settings.DELIVERY["LESSON_MESSAGE_DELAY_SECONDS"]
    if delay > 0:
        time.sleep(delay)


def _get_lesson(lesson_id) -> Lesson:
    try:
        return Lesson.objects.select_related("course").get(pk=lesson_id)
    except Lesson.DoesNotExist:
        raise PermanentDeliveryError(f"Lesson {lesson_id} no longer exists")


def lesson_processor(payload: dict):
    """Send one lesson (template, attachments, quiz) to a single learner, in order."""
    phone_number = payload["phone_number"]
    lesson = _get_lesson(payload["lesson_id"])
    course = lesson.course

    response = WhatsAppService.send_template(
        phone_number,
        LESSON_TEMPLATE,
        header=[lesson.title],
        body=[lesson.content],
        quick_reply=LESSON_DONE_REPLY,
    )
    ReplyContextService.record(
        phone_number, response["message_id"], course.pk, lesson_id=lesson.pk
    )

    if lesson.document:
        _pause()
        WhatsAppService.send_document(phone_number, lesson.document)

    if lesson.media:
        _pause()
        if lesson.media.lower().endswith(".mp4"):
            WhatsAppService.send_video(phone_number, lesson.media)
        else:
            WhatsAppService.send_image(phone_number, lesson.media)

    if lesson.external_link:
        _pause()
        WhatsAppService.send_text(phone_number, lesson.external_link)

    quiz = Quiz.objects.filter(lesson=lesson).first()
    if quiz:
        _pause()
        response = WhatsAppService.send_list_message(
            phone_number, quiz.question, quiz.options
        )
        ReplyContextService.record(
            phone_number,
            response["message_id"],
            course.pk,
            lesson_id=lesson.pk,
            quiz_id=quiz.pk,
        )

    logger.info(f"Lesson '{lesson.title}' sent to {phone_number}")


def reminder_processor(payload: dict):
    lesson = _get_lesson(payload["lesson_id"])
    lesson_number = payload.get("lesson_index", 0) + 1
    WhatsAppService.send_template(
        payload["phone_number"],
        REMINDER_TEMPLATE,
        header=[lesson.title],
        body=[lesson.course.name, str(lesson_number), REMINDER_LEAD_TEXT],
        quick_reply=REMINDER_READY_REPLY,
    )


def notification_processor(payload: dict):
    phone_number = payload["phone_number"]
    try:
        course = Course.objects.get(pk=payload["course_id"])
    except Course.DoesNotExist:
        raise PermanentDeliveryError(f"Course {payload['course_id']} no longer exists")

    response = WhatsAppService.send_template(
        phone_number,
        NOTIFICATION_TEMPLATE,
        header=[course.name],
        body=[course.description],
        quick_reply=COURSE_START_REPLY,
    )
    ReplyContextService.record(phone_number, response["message_id"], course.pk)

    if course.cover_image:
        _pause()
        WhatsAppService.send_image(phone_number, course.cover_image)


def welcome_processor(payload: dict):
    WhatsAppService.send_template(
        payload["phone_number"], WELCOME_TEMPLATE, body=[payload.get("name", "")]
    )


def text_processor(payload: dict):
    WhatsAppService.send_text(payload["phone_number"], payload["message"])


HANDLERS = {
    QueuedJob.QUEUE_LESSON: lesson_processor,
    QueuedJob.QUEUE_REMINDER: reminder_processor,
    QueuedJob.QUEUE_NOTIFICATION: notification_processor,
    QueuedJob.QUEUE_WELCOME: welcome_processor,
    QueuedJob.QUEUE_TEXT: text_processor,
}


class LaneWorker:
    """Consumes a single lane with its own concurrency budget and rate limit."""

    def __init__(
        self, queue_name, handler, concurrency=None, max_per_second=None
    ):
        delivery = settings.DELIVERY
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = concurrency or delivery["SEND_CONCURRENCY"]
        self.rate_limiter = RateLimiter(
            max_per_second or delivery["SEND_MAX_PER_SEC"], window=1.0
        )
        self.poll_interval = delivery["JOB_POLL_SECONDS"]
        self._slots = threading.BoundedSemaphore(self.concurrency)
        self._stop = threading.Event()
        self._executor = None
        self._dispatcher = None

    def process(self, job: QueuedJob) -> bool:
        """Run the handler for a claimed job and record the outcome."""
        logger.info(
            "Processing %s job %s (%s) attempt %s",
            self.queue_name,
            job.id,
            job.idempotency_key,
            job.attempts_made,
        )
        try:
            self.handler(job.payload)
        except PermanentDeliveryError as e:
            JobQueue.fail(job, e, retryable=False)
            return False
        except Exception as e:
            logger.exception("%s job %s raised", self.queue_name, job.id)
            JobQueue.fail(job, e)
            return False
        JobQueue.complete(job)
        return True

    def run_pending(self, limit: int = None) -> int:
        """Process due jobs in the calling thread. Returns how many were run."""
        processed = 0
        while limit is None or processed < limit:
            job = JobQueue.claim_next(self.queue_name)
            if job is None:
                break
            self.rate_limiter.acquire()
            self.process(job)
            processed += 1
        return processed

    def _run_in_thread(self, job):
        try:
            self.process(job)
        finally:
            self._slots.release()
            close_old_connections()

    def _dispatch_loop(self):
        while not self._stop.is_set():
            if not self._slots.acquire(timeout=self.poll_interval):
                continue
            try:
                job = JobQueue.claim_next(self.queue_name)
            except Exception:
                logger.exception("Could not claim a %s job", self.queue_name)
                job = None
            if job is None:
                self._slots.release()
                close_old_connections()
                self._stop.wait(self.poll_interval)
                continue
            self.rate_limiter.acquire()
            self._executor.submit(self._run_in_thread, job)

    def start(self):
        if self._dispatcher and self._dispatcher.is_alive():
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix=f"{self.queue_name}-worker",
        )
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop,
            name=f"{self.queue_name}-dispatcher",
            daemon=True,
        )
        self._dispatcher.start()
        logger.info(
            "%s worker started (concurrency=%s, %s/sec)",
            self.queue_name,
            self.concurrency,
            self.rate_limiter.max_per_window,
        )

    def stop(self, wait: bool = True):
        self._stop.set()
        if self._dispatcher:
            self._dispatcher.join(timeout=self.poll_interval * 2)
        if self._executor:
            self._executor.shutdown(wait=wait)
        logger.info("%s worker stopped", self.queue_name)


class WorkerPool:
    """One independent LaneWorker per queue lane."""

    def __init__(self, handlers: dict = None, concurrency=None, max_per_second=None):
        handlers = handlers or HANDLERS
        self.workers = {
            queue_name: LaneWorker(
                queue_name,
                handler,
                concurrency=concurrency,
                max_per_second=max_per_second,
            )
            for queue_name, handler in handlers.items()
        }

    def start(self):
        for worker in self.workers.values():
            worker.start()

    def stop(self, wait: bool = True):
        for worker in self.workers.values():
            worker.stop(wait=wait)

    def run_pending(self, queue_name: str = None) -> int:
        if queue_name:
            return self.workers[queue_name].run_pending()
        return sum(worker.run_pending() for worker in self.workers.values())
