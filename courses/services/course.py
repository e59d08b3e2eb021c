import logging

from django.conf import settings
from django.db import transaction
from django.utils.timezone import now

from courses.models import Course, Enrollment, Learner, Lesson, Quiz
from whatsapp.models import CourseSchedule, QueuedJob
from whatsapp.services.lesson_scheduler import (
    SchedulingError,
    lesson_scheduler,
    parse_frequency,
    parse_start_date,
    parse_time_of_day,
    parse_timezone,
)
from whatsapp.services.queue_service import JobQueue

logger = logging.getLogger(__name__)


class CourseValidationError(ValueError):
    pass


class CourseService:
    @staticmethod
    def _validate_schedule(time_of_day, start_date, frequency, timezone):
        try:
            parse_time_of_day(time_of_day)
            parse_frequency(frequency)
            tz = parse_timezone(timezone or settings.TIME_ZONE)
            parse_start_date(start_date, tz)
        except SchedulingError as e:
            raise CourseValidationError(str(e))

    @staticmethod
    def _validate_lessons(lessons_data):
        if not lessons_data or not isinstance(lessons_data, list):
            raise CourseValidationError("At least one lesson is required")

        seen_days = set()
        for lesson in lessons_data:
            title = (lesson.get("title") or "").strip()
            content = (lesson.get("content") or "").strip()
            try:
                day = int(lesson.get("day"))
            except (TypeError, ValueError):
                day = None
            if not title or not content or day is None:
                raise CourseValidationError(
                    "Each lesson must have a title, content, and numeric day"
                )
            if day in seen_days:
                raise CourseValidationError(
                    f"Duplicate day number found: {day}. Each lesson must have a unique day."
                )
            seen_days.add(day)

            quiz = lesson.get("quiz")
            if not quiz:
                continue
            if not (quiz.get("question") or "").strip():
                raise CourseValidationError(f'Lesson "{title}" must have a question')
            options = quiz.get("options")
            if not isinstance(options, list) or len(options) < 2:
                raise CourseValidationError(
                    f'Lesson "{title}" must have at least 2 quiz options'
                )
            correct = (quiz.get("correct_option") or quiz.get("correctOption") or "").strip()
            if not correct:
                raise CourseValidationError(f'Lesson "{title}" must have a correct option')
            if correct not in [str(o).strip() for o in options]:
                raise CourseValidationError(
                    f'Correct option for lesson "{title}" must be one of its options'
                )

    @classmethod
    def create_course(
        cls,
        course_data: dict,
        lessons_data: list,
        learner_ids: list,
        time_of_day: str = "09:00",
        start_date=None,
        frequency: str = "daily",
        timezone: str = None,
    ) -> dict:
        """
        Create a course with its lessons, quizzes and enrollments in one
        transaction. Published courses are announced to the enrolled learners
        and scheduled for delivery, drafts are only stored.
        """
        if not learner_ids or not isinstance(learner_ids, list):
            raise CourseValidationError("At least one learner ID is required")
        if not course_data or not course_data.get("name") or not course_data.get("description"):
            raise CourseValidationError("Course name and description are required")
        cls._validate_lessons(lessons_data)
        cls._validate_schedule(time_of_day, start_date, frequency, timezone)

        status = course_data.get("status") or Course.STATUS_PUBLISHED
        if status not in (Course.STATUS_DRAFT, Course.STATUS_PUBLISHED):
            raise CourseValidationError("New courses must be DRAFT or PUBLISHED")

        with transaction.atomic():
            learners = list(Learner.objects.filter(pk__in=learner_ids))
            if not learners:
                raise CourseValidationError(
                    "No valid learners found with the provided IDs"
                )

            course = Course.objects.create(
                name=course_data["name"],
                description=course_data["description"],
                cover_image=course_data.get("cover_image") or None,
                status=status,
                published_at=now() if status == Course.STATUS_PUBLISHED else None,
                admin_id=course_data.get("admin_id"),
                total_lessons=len(lessons_data),
                total_quizzes=sum(1 for lesson in lessons_data if lesson.get("quiz")),
            )

            lessons, quizzes = [], []
            for data in lessons_data:
                lesson = Lesson.objects.create(
                    course=course,
                    title=data["title"].strip(),
                    content=data["content"].strip(),
                    day=int(data["day"]),
                    document=data.get("document") or None,
                    media=data.get("media") or None,
                    external_link=data.get("external_link") or None,
                )
                lessons.append(lesson)

                quiz_data = data.get("quiz")
                if quiz_data:
                    quizzes.append(
                        Quiz.objects.create(
                            lesson=lesson,
                            question=quiz_data["question"].strip(),
                            options=[str(o).strip() for o in quiz_data["options"]],
                            correct_option=(
                                quiz_data.get("correct_option") or quiz_data.get("correctOption")
                            ).strip(),
                        )
                    )

            Enrollment.objects.bulk_create(
                [Enrollment(learner=learner, course=course) for learner in learners],
                ignore_conflicts=True,
            )
            enrollments = list(Enrollment.objects.filter(course=course))

        result = {
            "course": course,
            "lessons": lessons,
            "quizzes": quizzes,
            "enrollments": enrollments,
            "schedule": None,
        }

        if course.status == Course.STATUS_DRAFT:
            logger.info(f"Course '{course.name}' created successfully in DRAFT status.")
            return result

        result["schedule"] = cls._launch(
            course,
            [learner.number for learner in learners],
            time_of_day,
            start_date,
            frequency,
            timezone,
        )
        return result

    @staticmethod
    def _launch(course, numbers, time_of_day, start_date, frequency, timezone):
        """Announce a published course and start its lesson schedule."""
        logger.info(
            f"Queuing notifications for course '{course.name}' to {len(numbers)} learners."
        )
        for phone_number in numbers:
            JobQueue.enqueue(
                QueuedJob.QUEUE_NOTIFICATION,
                "sendNotification",
                {"phone_number": phone_number, "course_id": course.pk},
                idempotency_key=f"{course.pk}:{phone_number}",
            )
        try:
            return lesson_scheduler.schedule_delivery(
                course.pk, numbers, time_of_day, start_date, frequency, timezone
            )
        except SchedulingError as e:
            raise CourseValidationError(str(e))

    @classmethod
    def publish_course(
        cls,
        course_id,
        time_of_day: str = "09:00",
        start_date=None,
        frequency: str = "daily",
        timezone: str = None,
    ) -> dict:
        course = Course.objects.filter(pk=course_id).first()
        if not course:
            return {"success": False, "data": None, "error": "Course not found"}
        if course.status != Course.STATUS_DRAFT:
            return {
                "success": False,
                "data": None,
                "error": f"Only DRAFT courses can be published (course is {course.status})",
            }
        try:
            cls._validate_schedule(time_of_day, start_date, frequency, timezone)
        except CourseValidationError as e:
            return {"success": False, "data": None, "error": str(e)}

        updated = Course.objects.filter(pk=course.pk, status=Course.STATUS_DRAFT).update(
            status=Course.STATUS_PUBLISHED, published_at=now()
        )
        if not updated:
            return {"success": False, "data": None, "error": "Course is already published"}
        course.refresh_from_db()

        numbers = list(
            Learner.objects.filter(enrollments__course=course).values_list("number", flat=True)
        )
        schedule = None
        if numbers:
            schedule = cls._launch(course, numbers, time_of_day, start_date, frequency, timezone)
        logger.info(f"Course '{course.name}' published")
        return {"success": True, "data": {"course": course, "schedule": schedule}}

    @staticmethod
    def archive_course(course_id) -> dict:
        """Archive a course and stop any further lesson delivery."""
        course = Course.objects.filter(pk=course_id).first()
        if not course:
            return {"success": False, "data": None, "error": "Course not found"}
        if course.status == Course.STATUS_ARCHIVED:
            return {"success": False, "data": None, "error": "Course is already archived"}

        course.status = Course.STATUS_ARCHIVED
        course.save(update_fields=["status", "updated_at"])
        lesson_scheduler.disarm(course.pk)
        CourseSchedule.objects.filter(course=course).delete()
        logger.info(f"Course '{course.name}' archived")
        return {"success": True, "data": {"course": course}}

    @staticmethod
    def delete_course(course_id) -> dict:
        """Delete a course with everything hanging off it and cancel its timers."""
        course = Course.objects.filter(pk=course_id).first()
        if not course:
            return {"success": False, "data": None, "error": "Course not found"}

        name = course.name
        lesson_scheduler.disarm(course.pk)
        course.delete()
        logger.info(f"Course '{name}' and its related data deleted")
        return {"success": True, "message": f"Course '{name}' deleted", "data": None}
