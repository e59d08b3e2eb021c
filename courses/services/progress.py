import logging
from decimal import ROUND_HALF_UP, Decimal

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from courses.models import Course, CourseProgress, Learner, Lesson, LessonProgress, Quiz

logger = logging.getLogger(__name__)

# List rows are cut to 24 characters, so a long option comes back as its first 22 + ".."
TRUNCATED_PREFIX_LENGTH = 22
TRUNCATION_SUFFIX = ".."


def is_correct_answer(reply: str, correct_option: str) -> bool:
    if not reply or not correct_option:
        return False
    reply = reply.strip()
    correct_option = correct_option.strip()
    return reply == correct_option or (
        reply == correct_option[:TRUNCATED_PREFIX_LENGTH] + TRUNCATION_SUFFIX
    )


def percent(part: int, total: int) -> int:
    if not total:
        return 0
    # halves round up: 1 of 8 is 13
    value = (Decimal(part) * 100 / Decimal(total)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return min(100, int(value))


class ProgressService:
    @staticmethod
    def _complete_lesson(lesson_progress: LessonProgress, course_progress: CourseProgress, course: Course) -> bool:
        """
        Mark a lesson complete and count it towards the course, once.

        Returns False when the lesson was already complete.
        """
        now = timezone.now()
        marked = LessonProgress.objects.filter(
            pk=lesson_progress.pk, is_completed=False
        ).update(is_completed=True, completed_at=now)
        if not marked:
            return False

        total = course.total_lessons or course.lessons.count()
        CourseProgress.objects.filter(
            pk=course_progress.pk, completed_lessons__lt=total
        ).update(completed_lessons=F("completed_lessons") + 1)

        course_progress.refresh_from_db()
        course_progress.progress_percent = percent(course_progress.completed_lessons, total)
        fields = ["progress_percent"]
        if course_progress.completed_lessons >= total and not course_progress.is_completed:
            course_progress.is_completed = True
            course_progress.completed_at = now
            fields += ["is_completed", "completed_at"]
            logger.info(
                f"Learner {course_progress.learner_id} completed course '{course.name}'"
            )
        course_progress.save(update_fields=fields)
        return True

    @staticmethod
    def _feedback_context(course, lesson, quiz, reply) -> str:
        return (
            f"Course name: {course.name}\n"
            f"Course description: {course.description}\n"
            f"Lesson title: {lesson.title}\n"
            f"Lesson content: {lesson.content}\n"
            f"Quiz question: {quiz.question}\n"
            f"Quiz options: {', '.join(quiz.options)}\n"
            f"Correct answer: {quiz.correct_option}\n"
            f"Learner answer: {reply}"
        )

    @classmethod
    def record_progress(cls, phone_number: str, course_id, lesson_id, quiz_reply: str = None) -> dict:
        """
        Apply a learner's reply to their progress.

        With ``quiz_reply`` the reply is scored against the lesson's quiz. Only
        the first answer for a lesson counts. Without it the lesson is marked
        done. Both paths complete the lesson at most once.
        """
        learner = Learner.objects.filter(number=phone_number).first()
        if not learner:
            return {"success": False, "error": "Learner not found"}

        course = Course.objects.filter(pk=course_id).first()
        if not course:
            return {"success": False, "error": "Course not found"}

        lesson = Lesson.objects.filter(pk=lesson_id, course=course).first()
        if not lesson:
            return {"success": False, "error": "Lesson not found"}

        with transaction.atomic():
            CourseProgress.objects.get_or_create(learner=learner, course=course)
            # derived percentages are recomputed below, so concurrent replies queue here
            course_progress = CourseProgress.objects.select_for_update().get(
                learner=learner, course=course
            )
            lesson_progress, _ = LessonProgress.objects.get_or_create(
                learner=learner, lesson=lesson
            )

            correct_answer = None
            feedback_context = None
            is_correct = None

            if quiz_reply:
                quiz = Quiz.objects.filter(lesson=lesson).first()
                if quiz:
                    is_correct = is_correct_answer(quiz_reply, quiz.correct_option)
                    if not is_correct:
                        correct_answer = quiz.correct_option

                    first_answer = LessonProgress.objects.filter(
                        pk=lesson_progress.pk, quiz_reply__isnull=True
                    ).update(
                        quiz_reply=quiz_reply,
                        quiz_score=100 if is_correct else 0,
                    )
                    if first_answer:
                        if is_correct:
                            CourseProgress.objects.filter(pk=course_progress.pk).update(
                                correct_answers=F("correct_answers") + 1
                            )
                            course_progress.refresh_from_db()
                            course_progress.quiz_score = percent(
                                course_progress.correct_answers, course.total_quizzes
                            )
                            course_progress.save(update_fields=["quiz_score"])
                        cls._complete_lesson(lesson_progress, course_progress, course)
                    else:
                        logger.info(
                            "Quiz for lesson %s already answered by %s, score unchanged",
                            lesson.pk,
                            phone_number,
                        )

                    feedback_context = cls._feedback_context(course, lesson, quiz, quiz_reply)
                else:
                    logger.warning("Lesson %s has no quiz, treating reply as completion", lesson.pk)
                    cls._complete_lesson(lesson_progress, course_progress, course)
            else:
                if not cls._complete_lesson(lesson_progress, course_progress, course):
                    logger.info(
                        "Lesson %s already completed by %s", lesson.pk, phone_number
                    )

        course_progress.refresh_from_db()
        lesson_progress.refresh_from_db()
        return {
            "success": True,
            "course_progress": course_progress,
            "lesson_progress": lesson_progress,
            "correct_answer": correct_answer,
            "feedback_context": feedback_context,
            "is_correct": is_correct,
        }
