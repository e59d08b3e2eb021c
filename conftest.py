import pytest
from apscheduler.schedulers.background import BackgroundScheduler


@pytest.fixture(autouse=True)
def delivery_settings(settings):
    settings.WHATSAPP_ACCESS_TOKEN = "test-token"
    settings.WHATSAPP_PHONE_NUMBER_ID = "1000"
    settings.WHATSAPP_VERIFY_TOKEN = "verify-me"
    settings.WHATSAPP_API_URL = "https://graph.example.test/v22.0"
    settings.TIME_ZONE = "Europe/Istanbul"
    settings.DELIVERY = {
        **settings.DELIVERY,
        "AUTOSTART": False,
        "LESSON_MESSAGE_DELAY_SECONDS": 0,
        "SEND_MAX_PER_SEC": 1000,
    }
    return settings


@pytest.fixture(autouse=True)
def isolated_scheduler(monkeypatch):
    """Every test gets its own stopped scheduler, so triggers never really fire."""
    from whatsapp.services.lesson_scheduler import lesson_scheduler

    scheduler = BackgroundScheduler(timezone="UTC")
    monkeypatch.setattr(lesson_scheduler, "_scheduler", scheduler)
    monkeypatch.setattr(lesson_scheduler, "_armed", {})
    return scheduler


class FakeGateway:
    def __init__(self):
        self.sent = []
        self.error = None

    def __call__(self, message_type, to, payload):
        if self.error is not None:
            raise self.error
        self.sent.append((message_type, to, payload))
        return {"message_id": f"wamid.{len(self.sent)}", "recipient_id": to}

    def types(self):
        return [message_type for message_type, _, _ in self.sent]


@pytest.fixture
def gateway(monkeypatch):
    from whatsapp.services.messaging import WhatsAppService

    fake = FakeGateway()
    monkeypatch.setattr(WhatsAppService, "send", staticmethod(fake))
    return fake


@pytest.fixture
def make_learner(db):
    from courses.models import Learner

    def factory(number="905550000001", name="Ayse"):
        return Learner.objects.create(name=name, surname="Yilmaz", number=number)

    return factory


@pytest.fixture
def make_course(db):
    from courses.models import Course, Lesson, Quiz

    def factory(lessons=3, with_quiz=True, status=Course.STATUS_PUBLISHED, **lesson_extra):
        course = Course.objects.create(
            name="Safety Basics",
            description="Workplace safety in small steps",
            status=status,
            total_lessons=lessons,
            total_quizzes=lessons if with_quiz else 0,
        )
        for day in range(1, lessons + 1):
            lesson = Lesson.objects.create(
                course=course,
                title=f"Lesson {day}",
                content=f"Content of lesson {day}",
                day=day,
                **lesson_extra,
            )
            if with_quiz:
                Quiz.objects.create(
                    lesson=lesson,
                    question=f"Question {day}?",
                    options=["Wear a helmet", "Ignore the signs"],
                    correct_option="Wear a helmet",
                )
        return course

    return factory
