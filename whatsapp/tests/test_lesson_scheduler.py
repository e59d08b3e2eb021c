from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from django.utils import timezone

from whatsapp.models import CourseSchedule, QueuedJob
from whatsapp.services.lesson_scheduler import (
    LessonScheduler,
    SchedulingError,
    build_triggers,
    lesson_scheduler,
)

UTC = ZoneInfo("UTC")
PHONES = ["905550000001", "905550000002"]


def first_fires(hour, minute, frequency, start):
    lesson, reminder = build_triggers(hour, minute, frequency, start, "UTC")
    now = datetime(2026, 1, 1, tzinfo=UTC)
    return lesson.get_next_fire_time(None, now), reminder.get_next_fire_time(None, now)


def test_daily_reminder_runs_two_hours_before_lesson():
    lesson_at, reminder_at = first_fires(10, 0, "daily", date(2026, 3, 2))

    assert lesson_at == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
    assert lesson_at - reminder_at == timedelta(hours=2)


def test_daily_reminder_crossing_midnight_is_the_evening_before():
    lesson_at, reminder_at = first_fires(1, 30, "daily", date(2026, 3, 2))

    assert lesson_at == datetime(2026, 3, 2, 1, 30, tzinfo=UTC)
    assert reminder_at == datetime(2026, 3, 1, 23, 30, tzinfo=UTC)


def test_weekly_reminder_crossing_midnight_moves_to_previous_weekday():
    # 2026-03-02 is a Monday
    lesson, reminder = build_triggers(0, 30, "weekly", date(2026, 3, 2), "UTC")
    now = datetime(2026, 1, 1, tzinfo=UTC)

    lesson_at = lesson.get_next_fire_time(None, now)
    reminder_at = reminder.get_next_fire_time(None, now)
    assert lesson_at == datetime(2026, 3, 2, 0, 30, tzinfo=UTC)
    assert reminder_at == datetime(2026, 3, 1, 22, 30, tzinfo=UTC)

    next_lesson = lesson.get_next_fire_time(lesson_at, lesson_at)
    next_reminder = reminder.get_next_fire_time(reminder_at, reminder_at)
    assert next_lesson - next_reminder == timedelta(hours=2)


def test_monthly_reminder_on_the_first_moves_to_last_day_of_previous_month():
    lesson, reminder = build_triggers(1, 0, "monthly", date(2026, 4, 1), "UTC")
    now = datetime(2026, 1, 1, tzinfo=UTC)

    lesson_at = lesson.get_next_fire_time(None, now)
    reminder_at = reminder.get_next_fire_time(None, now)
    assert lesson_at == datetime(2026, 4, 1, 1, 0, tzinfo=UTC)
    assert reminder_at == datetime(2026, 3, 31, 23, 0, tzinfo=UTC)

    assert lesson.get_next_fire_time(lesson_at, lesson_at) == datetime(2026, 5, 1, 1, 0, tzinfo=UTC)
    assert reminder.get_next_fire_time(reminder_at, reminder_at) == datetime(
        2026, 4, 30, 23, 0, tzinfo=UTC
    )


@pytest.mark.django_db
def test_schedule_three_lessons_daily(make_course, isolated_scheduler):
    course = make_course(lessons=3)
    today = timezone.localdate().isoformat()

    result = lesson_scheduler.schedule_delivery(course.pk, PHONES, "10:00", today, "daily")

    assert result["success"] is True
    assert result["total_lessons"] == 3
    assert result["frequency"] == "daily"
    next_execution = datetime.fromisoformat(result["next_execution"])
    local = next_execution.astimezone(ZoneInfo("Europe/Istanbul"))
    assert (local.hour, local.minute) == (10, 0)
    assert next_execution >= timezone.now()

    schedule = CourseSchedule.objects.get(course=course)
    assert schedule.recipients == PHONES
    assert schedule.current_lesson_index == 0
    assert isolated_scheduler.get_job(f"course-{course.pk}-lesson") is not None
    assert isolated_scheduler.get_job(f"course-{course.pk}-reminder") is not None


@pytest.mark.django_db
@pytest.mark.parametrize(
    "kwargs",
    [
        {"time_of_day": "25:00"},
        {"time_of_day": "9am"},
        {"frequency": "hourly"},
        {"start_date": "2026-02-30"},
        {"tz_name": "Mars/Olympus"},
    ],
)
def test_invalid_schedule_is_rejected(make_course, kwargs):
    course = make_course(lessons=1)
    options = {"time_of_day": "09:00", "start_date": None, "frequency": "daily", **kwargs}

    with pytest.raises(SchedulingError):
        lesson_scheduler.schedule_delivery(course.pk, PHONES, **options)


@pytest.mark.django_db
def test_unknown_course_is_rejected():
    with pytest.raises(SchedulingError):
        lesson_scheduler.schedule_delivery(404, PHONES, "09:00")


def schedule_started(course, recipients=PHONES):
    yesterday = timezone.localdate() - timedelta(days=1)
    lesson_scheduler.schedule_delivery(course.pk, recipients, "09:00", yesterday, "daily")
    return CourseSchedule.objects.get(course=course)


@pytest.mark.django_db
def test_cursor_advances_by_one_per_firing_and_terminates(make_course, isolated_scheduler):
    course = make_course(lessons=3)
    schedule_started(course)
    lesson_ids = list(course.lessons.order_by("day").values_list("pk", flat=True))

    for expected_index in (1, 2, 3):
        assert lesson_scheduler.fire_lesson(course.pk) == len(PHONES)
        schedule = CourseSchedule.objects.get(course=course)
        assert schedule.current_lesson_index == expected_index

    keys = set(
        QueuedJob.objects.filter(queue_name=QueuedJob.QUEUE_LESSON).values_list(
            "idempotency_key", flat=True
        )
    )
    assert keys == {
        f"{course.pk}:{lesson_id}:{phone}" for lesson_id in lesson_ids for phone in PHONES
    }

    assert lesson_scheduler.fire_lesson(course.pk) == 0
    schedule.refresh_from_db()
    assert schedule.status == CourseSchedule.STATUS_COMPLETED
    assert schedule.current_lesson_index == 3
    assert isolated_scheduler.get_job(f"course-{course.pk}-lesson") is None
    assert isolated_scheduler.get_job(f"course-{course.pk}-reminder") is None

    assert lesson_scheduler.fire_lesson(course.pk) == 0
    assert QueuedJob.objects.filter(queue_name=QueuedJob.QUEUE_LESSON).count() == 6


@pytest.mark.django_db
def test_lesson_firing_before_start_date_does_nothing(make_course):
    course = make_course(lessons=2)
    next_week = timezone.localdate() + timedelta(days=7)
    lesson_scheduler.schedule_delivery(course.pk, PHONES, "09:00", next_week, "daily")

    assert lesson_scheduler.fire_lesson(course.pk) == 0
    assert lesson_scheduler.fire_reminder(course.pk) == 0
    assert CourseSchedule.objects.get(course=course).current_lesson_index == 0
    assert not QueuedJob.objects.exists()


@pytest.mark.django_db
def test_reminder_is_sent_once_per_lesson_and_never_moves_cursor(make_course):
    course = make_course(lessons=2)
    schedule_started(course)
    first_lesson = course.lessons.order_by("day").first()

    assert lesson_scheduler.fire_reminder(course.pk) == len(PHONES)
    assert lesson_scheduler.fire_reminder(course.pk) == 0

    schedule = CourseSchedule.objects.get(course=course)
    assert schedule.current_lesson_index == 0
    assert schedule.last_reminder_index == 0
    reminder = QueuedJob.objects.filter(queue_name=QueuedJob.QUEUE_REMINDER).first()
    assert reminder.payload["lesson_id"] == first_lesson.pk

    lesson_scheduler.fire_lesson(course.pk)
    assert lesson_scheduler.fire_reminder(course.pk) == len(PHONES)
    assert CourseSchedule.objects.get(course=course).last_reminder_index == 1


@pytest.mark.django_db
def test_rescheduling_keeps_the_cursor(make_course, isolated_scheduler):
    course = make_course(lessons=3)
    schedule_started(course)
    lesson_scheduler.fire_lesson(course.pk)

    lesson_scheduler.schedule_delivery(course.pk, PHONES[:1], "18:30", None, "weekly")

    schedule = CourseSchedule.objects.get(course=course)
    assert CourseSchedule.objects.filter(course=course).count() == 1
    assert schedule.current_lesson_index == 1
    assert schedule.time_of_day == "18:30"
    assert schedule.frequency == "weekly"
    assert schedule.recipients == PHONES[:1]
    lesson_jobs = [j for j in isolated_scheduler.get_jobs() if j.id == f"course-{course.pk}-lesson"]
    assert len(lesson_jobs) == 1


@pytest.mark.django_db
def test_firing_for_a_deleted_schedule_removes_its_triggers(make_course, isolated_scheduler):
    course = make_course(lessons=2)
    schedule_started(course)
    course_id = course.pk
    course.delete()

    assert lesson_scheduler.fire_lesson(course_id) == 0
    assert isolated_scheduler.get_job(f"course-{course_id}-lesson") is None
    assert isolated_scheduler.get_job(f"course-{course_id}-reminder") is None


@pytest.mark.django_db
def test_restore_rearms_only_active_schedules(make_course, isolated_scheduler):
    active = make_course(lessons=2)
    done = make_course(lessons=1)
    schedule_started(active)
    schedule_started(done)
    CourseSchedule.objects.filter(course=done).update(status=CourseSchedule.STATUS_COMPLETED)
    isolated_scheduler.remove_all_jobs()

    assert lesson_scheduler.restore_schedules() == 1
    assert isolated_scheduler.get_job(f"course-{active.pk}-lesson") is not None
    assert isolated_scheduler.get_job(f"course-{done.pk}-lesson") is None


@pytest.mark.django_db
def test_delivery_process_picks_up_schedules_written_elsewhere(make_course):
    web = LessonScheduler(BackgroundScheduler(timezone="UTC"))
    delivery = LessonScheduler(BackgroundScheduler(timezone="UTC"))
    course = make_course(lessons=2)
    course_id = course.pk
    job_id = f"course-{course_id}-lesson"

    web.schedule_delivery(course.pk, PHONES, "09:00")
    assert delivery.scheduler.get_job(job_id) is None

    assert delivery.sync_schedules() == 1
    assert delivery.scheduler.get_job(job_id) is not None
    assert delivery.sync_schedules() == 0

    web.schedule_delivery(course.pk, PHONES, "18:30", None, "weekly")
    assert delivery.sync_schedules() == 1

    course.delete()
    assert delivery.sync_schedules() == 0
    assert delivery.scheduler.get_job(job_id) is None
    assert delivery.scheduler.get_job(f"course-{course_id}-reminder") is None
