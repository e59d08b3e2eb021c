import logging
import re
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from django.conf import settings
from django.db import close_old_connections
from django.utils import timezone

from courses.models import Course
from whatsapp.models import CourseSchedule, QueuedJob
from whatsapp.scheduler import get_scheduler
from whatsapp.services.queue_service import JobQueue

logger = logging.getLogger(__name__)

TIME_OF_DAY_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")
FREQUENCIES = ("daily", "weekly", "monthly")
REMINDER_LEAD = timedelta(hours=2)


class SchedulingError(ValueError):
    pass


def parse_time_of_day(value: str):
    match = TIME_OF_DAY_PATTERN.match(str(value or "").strip())
    if not match:
        raise SchedulingError("Invalid time format. Use HH:MM in 24-hour format")
    return int(match.group(1)), int(match.group(2))


def parse_frequency(value: str) -> str:
    frequency = str(value or "").strip().lower()
    if frequency not in FREQUENCIES:
        raise SchedulingError('Invalid frequency. Use "daily", "weekly", or "monthly"')
    return frequency


def parse_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise SchedulingError(f"Unknown timezone '{name}'")


def parse_start_date(value, tz: ZoneInfo) -> date:
    if value in (None, ""):
        return timezone.localdate(timezone=tz)
    if isinstance(value, datetime):
        return value.astimezone(tz).date() if timezone.is_aware(value) else value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise SchedulingError("Invalid start date format. Use YYYY-MM-DD")


def _day_fields(frequency: str, start_date: date, day_before: bool) -> dict:
    """Cron day fields that pin weekly/monthly delivery to the start date."""
    if frequency == "weekly":
        weekday = start_date.weekday()
        return {"day_of_week": (weekday - 1) % 7 if day_before else weekday}
    if frequency == "monthly":
        # days missing from short months are skipped by the cron trigger itself
        if not day_before:
            return {"day": start_date.day}
        return {"day": start_date.day - 1 if start_date.day > 1 else "last"}
    return {}


def build_triggers(hour: int, minute: int, frequency: str, start_date: date, tz_name: str):
    """
    Return ``(lesson_trigger, reminder_trigger)``.

    The reminder fires two hours before each lesson. When that moves it
    before midnight, its day-of-week/day-of-month moves back one day too.
    """
    reminder_hour = (hour - 2) % 24
    crosses_midnight = hour < 2

    lesson_trigger = CronTrigger(
        hour=hour,
        minute=minute,
        start_date=start_date.isoformat(),
        timezone=tz_name,
        **_day_fields(frequency, start_date, day_before=False),
    )
    reminder_start = start_date - timedelta(days=1) if crosses_midnight else start_date
    reminder_trigger = CronTrigger(
        hour=reminder_hour,
        minute=minute,
        start_date=reminder_start.isoformat(),
        timezone=tz_name,
        **_day_fields(frequency, start_date, day_before=crosses_midnight),
    )
    return lesson_trigger, reminder_trigger


class LessonScheduler:
    """
    Turns a course into recurring lesson/reminder triggers.

    APScheduler jobs only hold the timers. The cursor, the reminder guard and
    the rule definition live in ``CourseSchedule`` so a restart can re-arm
    every unfinished course with ``restore_schedules``. Rules written by
    another process (the web app) are picked up by ``sync_schedules``.
    """

    def __init__(self, scheduler=None):
        self._scheduler = scheduler
        # course id -> CourseSchedule.updated_at of the rule currently armed
        self._armed = {}

    @property
    def scheduler(self):
        if self._scheduler is None:
            self._scheduler = get_scheduler()
        return self._scheduler

    @staticmethod
    def _job_id(course_id, kind: str) -> str:
        return f"course-{course_id}-{kind}"

    def schedule_delivery(
        self,
        course_id,
        recipients,
        time_of_day: str,
        start_date=None,
        frequency: str = "daily",
        tz_name: str = None,
    ) -> dict:
        hour, minute = parse_time_of_day(time_of_day)
        frequency = parse_frequency(frequency)
        tz_name = tz_name or settings.TIME_ZONE
        tz = parse_timezone(tz_name)
        start = parse_start_date(start_date, tz)

        course = Course.objects.filter(pk=course_id).first()
        if course is None:
            raise SchedulingError("Course not found")

        total_lessons = course.lessons.count()
        unique_recipients = list(dict.fromkeys(str(r) for r in recipients))

        schedule, created = CourseSchedule.objects.update_or_create(
            course=course,
            defaults={
                "recipients": unique_recipients,
                "time_of_day": f"{hour:02d}:{minute:02d}",
                "start_date": start,
                "frequency": frequency,
                "timezone_name": tz_name,
                "status": CourseSchedule.STATUS_ACTIVE,
            },
        )
        if not created:
            logger.info(
                "Updating existing schedule for course %s (lesson index %s kept)",
                course.pk,
                schedule.current_lesson_index,
            )

        next_execution = self.arm(schedule)

        logger.info(
            f"Lessons scheduled for course '{course.name}' at {time_of_day} "
            f"{frequency} ({tz_name}), {total_lessons} lessons, "
            f"next lesson at {next_execution.isoformat() if next_execution else 'n/a'}"
        )
        return {
            "success": True,
            "message": f"Scheduled {total_lessons} lessons for {frequency} delivery at {time_of_day}",
            "course_id": course.pk,
            "total_lessons": total_lessons,
            "time_of_day": schedule.time_of_day,
            "start_date": start.isoformat(),
            "frequency": frequency,
            "timezone": tz_name,
            "next_execution": next_execution.isoformat() if next_execution else None,
        }

    def arm(self, schedule: CourseSchedule):
        """(Re)register both triggers for a schedule. Returns the next lesson time."""
        hour, minute = parse_time_of_day(schedule.time_of_day)
        try:
            lesson_trigger, reminder_trigger = build_triggers(
                hour, minute, schedule.frequency, schedule.start_date, schedule.timezone_name
            )
        except (ValueError, TypeError) as e:
            raise SchedulingError(f"Could not build schedule: {e}")

        course_id = schedule.course_id
        self.disarm(course_id)
        common = {"coalesce": True, "max_instances": 1, "misfire_grace_time": 3600}
        self.scheduler.add_job(
            self._run_trigger,
            lesson_trigger,
            args=["lesson", course_id],
            id=self._job_id(course_id, "lesson"),
            replace_existing=True,
            **common,
        )
        self.scheduler.add_job(
            self._run_trigger,
            reminder_trigger,
            args=["reminder", course_id],
            id=self._job_id(course_id, "reminder"),
            replace_existing=True,
            **common,
        )

        now = timezone.now().astimezone(ZoneInfo(schedule.timezone_name))
        next_execution = lesson_trigger.get_next_fire_time(None, now)
        CourseSchedule.objects.filter(pk=schedule.pk).update(next_fire_at=next_execution)
        self._armed[course_id] = schedule.updated_at
        return next_execution

    def disarm(self, course_id):
        self._armed.pop(course_id, None)
        for kind in ("lesson", "reminder"):
            try:
                self.scheduler.remove_job(self._job_id(course_id, kind))
            except JobLookupError:
                pass

    def _run_trigger(self, kind: str, course_id):
        try:
            if kind == "lesson":
                self.fire_lesson(course_id)
            else:
                self.fire_reminder(course_id)
        except Exception:
            logger.exception("%s trigger for course %s failed", kind, course_id)
        finally:
            close_old_connections()

    def _load(self, course_id):
        schedule = (
            CourseSchedule.objects.select_related("course")
            .filter(course_id=course_id)
            .first()
        )
        if schedule is None:
            logger.warning(
                "Schedule for course %s no longer exists, stopping its triggers",
                course_id,
            )
            self.disarm(course_id)
            return None
        if schedule.status == CourseSchedule.STATUS_COMPLETED:
            self.disarm(course_id)
            return None
        return schedule

    def _complete(self, schedule: CourseSchedule):
        CourseSchedule.objects.filter(pk=schedule.pk).update(
            status=CourseSchedule.STATUS_COMPLETED, next_fire_at=None
        )
        self.disarm(schedule.course_id)
        logger.info(
            f"All lessons for course '{schedule.course.name}' have been sent. Stopping scheduler."
        )

    def _next_lesson_time(self, course_id):
        job = self.scheduler.get_job(self._job_id(course_id, "lesson"))
        return getattr(job, "next_run_time", None) if job else None

    def fire_lesson(self, course_id) -> int:
        """Queue the lesson at the cursor for every recipient, then advance the cursor."""
        schedule = self._load(course_id)
        if schedule is None:
            return 0

        tz = ZoneInfo(schedule.timezone_name)
        if timezone.localdate(timezone=tz) < schedule.start_date:
            logger.info("Course %s starts on %s, waiting", course_id, schedule.start_date)
            return 0

        lessons = list(schedule.course.lessons.order_by("day"))
        index = schedule.current_lesson_index
        if index >= len(lessons):
            self._complete(schedule)
            return 0

        lesson = lessons[index]
        logger.info(
            f"Queuing lesson {index + 1}/{len(lessons)}: '{lesson.title}' "
            f"for {len(schedule.recipients)} learners"
        )
        queued = 0
        for phone_number in schedule.recipients:
            job = JobQueue.enqueue(
                QueuedJob.QUEUE_LESSON,
                "sendLesson",
                {
                    "phone_number": phone_number,
                    "course_id": course_id,
                    "lesson_id": lesson.pk,
                    "lesson_index": index,
                },
                idempotency_key=f"{course_id}:{lesson.pk}:{phone_number}",
            )
            if job is not None:
                queued += 1

        advanced = CourseSchedule.objects.filter(
            pk=schedule.pk, current_lesson_index=index
        ).update(
            current_lesson_index=index + 1,
            next_fire_at=self._next_lesson_time(course_id),
        )
        if not advanced:
            logger.warning(
                "Lesson index for course %s moved while firing, not advancing", course_id
            )
        return queued

    def fire_reminder(self, course_id) -> int:
        """Queue a reminder for the upcoming lesson, once per lesson. Never moves the cursor."""
        schedule = self._load(course_id)
        if schedule is None:
            return 0

        tz = ZoneInfo(schedule.timezone_name)
        upcoming_day = (timezone.localtime(timezone=tz) + REMINDER_LEAD).date()
        if upcoming_day < schedule.start_date:
            return 0

        lessons = list(schedule.course.lessons.order_by("day"))
        index = schedule.current_lesson_index
        if index >= len(lessons):
            self._complete(schedule)
            return 0

        if schedule.last_reminder_index == index:
            logger.debug("Reminder for lesson %s of course %s already queued", index, course_id)
            return 0

        claimed = (
            CourseSchedule.objects.filter(pk=schedule.pk, current_lesson_index=index)
            .exclude(last_reminder_index=index)
            .update(last_reminder_index=index)
        )
        if not claimed:
            return 0

        lesson = lessons[index]
        logger.info(
            f"Queuing reminders for lesson {index + 1}/{len(lessons)}: '{lesson.title}'"
        )
        queued = 0
        for phone_number in schedule.recipients:
            job = JobQueue.enqueue(
                QueuedJob.QUEUE_REMINDER,
                "sendReminder",
                {
                    "phone_number": phone_number,
                    "course_id": course_id,
                    "lesson_id": lesson.pk,
                    "lesson_index": index,
                },
                idempotency_key=f"{course_id}:{lesson.pk}:{phone_number}",
            )
            if job is not None:
                queued += 1
        return queued

    def restore_schedules(self) -> int:
        """Re-arm every unfinished schedule, e.g. after a process restart."""
        restored = 0
        for schedule in CourseSchedule.objects.filter(
            status=CourseSchedule.STATUS_ACTIVE
        ).select_related("course"):
            try:
                self.arm(schedule)
                restored += 1
            except SchedulingError:
                logger.exception("Could not restore schedule for course %s", schedule.course_id)
        logger.info("Restored %s lesson schedules", restored)
        return restored

    def sync_schedules(self) -> int:
        """
        Arm active schedules that are new or changed since they were last
        armed here, and drop timers whose schedule is gone.
        """
        armed = 0
        active = set()
        for schedule in CourseSchedule.objects.filter(
            status=CourseSchedule.STATUS_ACTIVE
        ).select_related("course"):
            active.add(schedule.course_id)
            job = self.scheduler.get_job(self._job_id(schedule.course_id, "lesson"))
            if job is not None and self._armed.get(schedule.course_id) == schedule.updated_at:
                continue
            try:
                self.arm(schedule)
                armed += 1
            except SchedulingError:
                logger.exception("Could not arm schedule for course %s", schedule.course_id)

        for course_id in set(self._armed) - active:
            logger.info("Schedule for course %s is no longer active, stopping its triggers", course_id)
            self.disarm(course_id)

        if armed:
            logger.info("Armed %s new or changed lesson schedules", armed)
        return armed


lesson_scheduler = LessonScheduler()
