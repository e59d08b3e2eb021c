import pytest
from rest_framework.test import APIClient

from courses.models import Course, Enrollment, Learner, Lesson, Quiz
from courses.services.course import CourseService, CourseValidationError
from courses.services.learners import LearnerService
from whatsapp.models import CourseSchedule, MessageContext, QueuedJob
from whatsapp.services.queue_service import JobQueue

pytestmark = pytest.mark.django_db


def lessons_payload():
    return [
        {
            "title": "Helmets",
            "content": "Always wear one on site.",
            "day": 1,
            "quiz": {
                "question": "When do you wear a helmet?",
                "options": ["Always", "Never"],
                "correct_option": "Always",
            },
        },
        {"title": "Signs", "content": "Read every sign.", "day": 2},
    ]


@pytest.fixture
def learners(make_learner):
    return [make_learner("905550000001", "Ayse"), make_learner("905550000002", "Mehmet")]


def create(learners, **overrides):
    course_data = {"name": "Site Safety", "description": "Stay safe", **overrides.pop("course", {})}
    return CourseService.create_course(
        course_data,
        overrides.pop("lessons", lessons_payload()),
        overrides.pop("learner_ids", [learner.pk for learner in learners]),
        **overrides,
    )


def test_published_course_is_created_notified_and_scheduled(learners, isolated_scheduler):
    result = create(learners, time_of_day="10:00")

    course = result["course"]
    assert course.status == Course.STATUS_PUBLISHED
    assert course.total_lessons == 2
    assert course.total_quizzes == 1
    assert len(result["lessons"]) == 2
    assert len(result["quizzes"]) == 1
    assert len(result["enrollments"]) == 2

    keys = set(
        QueuedJob.objects.filter(queue_name=QueuedJob.QUEUE_NOTIFICATION).values_list(
            "idempotency_key", flat=True
        )
    )
    assert keys == {f"{course.pk}:905550000001", f"{course.pk}:905550000002"}

    assert result["schedule"]["total_lessons"] == 2
    schedule = CourseSchedule.objects.get(course=course)
    assert sorted(schedule.recipients) == ["905550000001", "905550000002"]
    assert isolated_scheduler.get_job(f"course-{course.pk}-lesson") is not None


def test_draft_course_is_not_scheduled_or_notified(learners):
    result = create(learners, course={"status": Course.STATUS_DRAFT})

    assert result["course"].status == Course.STATUS_DRAFT
    assert result["schedule"] is None
    assert not QueuedJob.objects.exists()
    assert not CourseSchedule.objects.exists()


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"learner_ids": []}, "At least one learner ID is required"),
        ({"course": {"name": ""}}, "Course name and description are required"),
        ({"lessons": []}, "At least one lesson is required"),
        ({"time_of_day": "24:00"}, "Invalid time format"),
        ({"frequency": "yearly"}, "Invalid frequency"),
        ({"learner_ids": [999]}, "No valid learners found"),
    ],
)
def test_invalid_course_input_is_rejected(learners, overrides, message):
    with pytest.raises(CourseValidationError, match=message):
        create(learners, **overrides)

    assert not Course.objects.exists()


@pytest.mark.parametrize(
    "lesson_patch, message",
    [
        ({"day": 1}, "Duplicate day number"),
        ({"title": ""}, "must have a title"),
        ({"quiz": {"question": "", "options": ["a", "b"], "correct_option": "a"}}, "must have a question"),
        ({"quiz": {"question": "Q?", "options": ["a"], "correct_option": "a"}}, "at least 2 quiz options"),
        ({"quiz": {"question": "Q?", "options": ["a", "b"], "correct_option": "c"}}, "must be one of its options"),
    ],
)
def test_invalid_lessons_are_rejected(learners, lesson_patch, message):
    lessons = lessons_payload()
    lessons[1].update(lesson_patch)

    with pytest.raises(CourseValidationError, match=message):
        create(learners, lessons=lessons)

    assert not Lesson.objects.exists()
    assert not Quiz.objects.exists()


def test_publish_draft_starts_delivery(learners, isolated_scheduler):
    course = create(learners, course={"status": Course.STATUS_DRAFT})["course"]

    result = CourseService.publish_course(course.pk, time_of_day="08:15")

    assert result["success"] is True
    course.refresh_from_db()
    assert course.status == Course.STATUS_PUBLISHED
    assert course.published_at is not None
    assert CourseSchedule.objects.get(course=course).time_of_day == "08:15"
    assert QueuedJob.objects.filter(queue_name=QueuedJob.QUEUE_NOTIFICATION).count() == 2


def test_publish_only_works_on_drafts(learners):
    course = create(learners)["course"]

    result = CourseService.publish_course(course.pk)

    assert result["success"] is False
    assert "Only DRAFT" in result["error"]


def test_archive_stops_delivery(learners, isolated_scheduler):
    course = create(learners)["course"]

    result = CourseService.archive_course(course.pk)

    assert result["success"] is True
    course.refresh_from_db()
    assert course.status == Course.STATUS_ARCHIVED
    assert not CourseSchedule.objects.exists()
    assert isolated_scheduler.get_job(f"course-{course.pk}-lesson") is None


def test_delete_cascades_and_cancels_timers(learners, isolated_scheduler):
    course = create(learners)["course"]
    MessageContext.objects.create(message_id="wamid.1", phone_number="905550000001", course=course)

    result = CourseService.delete_course(course.pk)

    assert result["success"] is True
    assert not Course.objects.exists()
    assert not Lesson.objects.exists()
    assert not Enrollment.objects.exists()
    assert not MessageContext.objects.exists()
    assert not CourseSchedule.objects.exists()
    assert isolated_scheduler.get_job(f"course-{course.pk}-lesson") is None
    assert Learner.objects.count() == 2


def test_delete_unknown_course():
    assert CourseService.delete_course(404)["error"] == "Course not found"


def test_register_learner_queues_one_welcome():
    first = LearnerService.register_learner({"name": "Ayse", "number": "+905550000001"})
    welcome = QueuedJob.objects.get(queue_name=QueuedJob.QUEUE_WELCOME)
    JobQueue.complete(welcome)
    second = LearnerService.register_learner({"name": "Ayse", "surname": "Kaya", "number": "905550000001"})

    assert first["created"] is True
    assert second["created"] is False
    assert Learner.objects.get().surname == "Kaya"
    job = QueuedJob.objects.get(queue_name=QueuedJob.QUEUE_WELCOME)
    assert job.status == QueuedJob.STATUS_COMPLETED
    assert job.idempotency_key == "welcome:905550000001"
    assert job.payload == {"phone_number": "905550000001", "name": "Ayse"}


def test_register_learner_requires_name_and_number():
    result = LearnerService.register_learner({"name": "Ayse"})

    assert result["success"] is False
    assert not Learner.objects.exists()


class TestEndpoints:
    @pytest.fixture
    def client(self):
        return APIClient()

    def test_create_course(self, client, learners):
        response = client.post(
            "/courses/",
            {
                "course": {"name": "Site Safety", "description": "Stay safe"},
                "lessons": lessons_payload(),
                "learner_ids": [learner.pk for learner in learners],
                "time_of_day": "09:30",
                "frequency": "weekly",
            },
            format="json",
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["course"]["total_lessons"] == 2
        assert [lesson["day"] for lesson in data["course"]["lessons"]] == [1, 2]
        assert data["schedule"]["frequency"] == "weekly"

    def test_create_course_validation_error(self, client, learners):
        response = client.post(
            "/courses/",
            {"course": {"name": "x", "description": "y"}, "lessons": [], "learner_ids": [learners[0].pk]},
            format="json",
        )

        assert response.status_code == 400
        assert response.json()["error"] == "At least one lesson is required"

    def test_status_transitions(self, client, learners):
        course = create(learners, course={"status": Course.STATUS_DRAFT})["course"]

        published = client.put(f"/courses/{course.pk}/status", {"status": "published"}, format="json")
        again = client.put(f"/courses/{course.pk}/status", {"status": "PUBLISHED"}, format="json")
        archived = client.put(f"/courses/{course.pk}/status", {"status": "ARCHIVED"}, format="json")
        bogus = client.put(f"/courses/{course.pk}/status", {"status": "DRAFT"}, format="json")

        assert published.status_code == 200
        assert again.status_code == 400
        assert archived.status_code == 200
        assert archived.json()["data"]["course"]["status"] == "ARCHIVED"
        assert bogus.status_code == 400

    def test_delete_course(self, client, learners):
        course = create(learners)["course"]

        assert client.delete(f"/courses/{course.pk}").status_code == 200
        assert client.delete(f"/courses/{course.pk}").status_code == 404

    def test_register_learner(self, client):
        response = client.post(
            "/courses/learners/", {"name": "Ayse", "number": "905550000001"}, format="json"
        )

        assert response.status_code == 201
        assert response.json()["data"]["number"] == "905550000001"
