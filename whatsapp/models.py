from datetime import timedelta

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from courses.models import Course, Lesson, Quiz


def default_context_expiry():
    hours = settings.DELIVERY["REPLY_CONTEXT_TTL_HOURS"]
    return timezone.now() + timedelta(hours=hours)


class Message(models.Model):
    """Audit trail of every outgoing send and incoming webhook message."""

    DIRECTION_CHOICES = [
        ("outgoing", "Outgoing"),
        ("incoming", "Incoming"),
    ]
    STATUS_CHOICES = [
        ("sent", "Sent"),
        ("delivered", "Delivered"),
        ("read", "Read"),
        ("failed", "Failed"),
        ("received", "Received"),
        ("other", "Other"),
    ]

    message_id = models.CharField(max_length=255, unique=True)
    sender = models.CharField(max_length=64, blank=True, null=True)
    recipient = models.CharField(max_length=64, blank=True, null=True)
    body = models.TextField(blank=True, null=True)
    type = models.CharField(max_length=32, blank=True, null=True)
    direction = models.CharField(max_length=10, choices=DIRECTION_CHOICES)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default="other")
    timestamp = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["sender", "created_at"]),
            models.Index(fields=["created_at"]),
        ]

    def __str__(self):
        return f"{self.direction} {self.type} {self.message_id} ({self.status})"


class MessageContext(models.Model):
    """Links an outbound message to the course/lesson/quiz a reply would answer."""

    message_id = models.CharField(max_length=255, unique=True)
    phone_number = models.CharField(max_length=32)
    course = models.ForeignKey(
        Course, on_delete=models.CASCADE, related_name="message_contexts"
    )
    lesson = models.ForeignKey(
        Lesson,
        on_delete=models.CASCADE,
        related_name="message_contexts",
        null=True,
        blank=True,
    )
    quiz = models.ForeignKey(
        Quiz,
        on_delete=models.CASCADE,
        related_name="message_contexts",
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField(default=default_context_expiry)

    class Meta:
        indexes = [
            models.Index(fields=["phone_number", "created_at"]),
            models.Index(fields=["expires_at"]),
        ]

    def __str__(self):
        return f"{self.phone_number} -> course {self.course_id} / lesson {self.lesson_id}"


class QueuedJob(models.Model):
    QUEUE_LESSON = "lesson"
    QUEUE_REMINDER = "reminder"
    QUEUE_NOTIFICATION = "notification"
    QUEUE_WELCOME = "welcome"
    QUEUE_TEXT = "text"
    QUEUE_CHOICES = [
        (QUEUE_LESSON, "Lesson"),
        (QUEUE_REMINDER, "Reminder"),
        (QUEUE_NOTIFICATION, "Notification"),
        (QUEUE_WELCOME, "Welcome"),
        (QUEUE_TEXT, "Text"),
    ]

    STATUS_WAITING = "waiting"
    STATUS_ACTIVE = "active"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"
    STATUS_CHOICES = [
        (STATUS_WAITING, "Waiting"),
        (STATUS_ACTIVE, "Active"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_FAILED, "Failed"),
    ]
    PENDING_STATUSES = (STATUS_WAITING, STATUS_ACTIVE)

    queue_name = models.CharField(max_length=20, choices=QUEUE_CHOICES)
    job_type = models.CharField(max_length=50)
    idempotency_key = models.CharField(max_length=255)
    payload = models.JSONField(default=dict)
    status = models.CharField(
        max_length=10, choices=STATUS_CHOICES, default=STATUS_WAITING
    )
    attempts_made = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    run_at = models.DateTimeField(default=timezone.now)
    last_error = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["run_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["queue_name", "idempotency_key"],
                condition=Q(status__in=["waiting", "active"]),
                name="unique_pending_job_per_key",
            ),
        ]
        indexes = [
            models.Index(fields=["queue_name", "status", "run_at"]),
            models.Index(fields=["status", "finished_at"]),
        ]

    def __str__(self):
        return f"{self.queue_name}:{self.idempotency_key} ({self.status})"


class CourseSchedule(models.Model):
    """Durable state behind a course's lesson and reminder triggers."""

    FREQUENCY_CHOICES = [
        ("daily", "Daily"),
        ("weekly", "Weekly"),
        ("monthly", "Monthly"),
    ]
    STATUS_ACTIVE = "active"
    STATUS_COMPLETED = "completed"
    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_COMPLETED, "Completed"),
    ]

    course = models.OneToOneField(
        Course, on_delete=models.CASCADE, related_name="schedule"
    )
    recipients = models.JSONField(default=list)
    time_of_day = models.CharField(max_length=5)
    start_date = models.DateField()
    frequency = models.CharField(max_length=10, choices=FREQUENCY_CHOICES)
    timezone_name = models.CharField(max_length=64)
    current_lesson_index = models.PositiveIntegerField(default=0)
    last_reminder_index = models.IntegerField(default=-1)
    status = models.CharField(
        max_length=10, choices=STATUS_CHOICES, default=STATUS_ACTIVE
    )
    next_fire_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return (
            f"{self.course.name}: {self.frequency} at {self.time_of_day} "
            f"(lesson index {self.current_lesson_index}, {self.status})"
        )
