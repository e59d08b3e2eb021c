import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

import whatsapp.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("courses", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Message",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("message_id", models.CharField(max_length=255, unique=True)),
                ("sender", models.CharField(blank=True, max_length=64, null=True)),
                ("recipient", models.CharField(blank=True, max_length=64, null=True)),
                ("body", models.TextField(blank=True, null=True)),
                ("type", models.CharField(blank=True, max_length=32, null=True)),
                (
                    "direction",
                    models.CharField(
                        choices=[("outgoing", "Outgoing"), ("incoming", "Incoming")],
                        max_length=10,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("sent", "Sent"),
                            ("delivered", "Delivered"),
                            ("read", "Read"),
                            ("failed", "Failed"),
                            ("received", "Received"),
                            ("other", "Other"),
                        ],
                        default="other",
                        max_length=10,
                    ),
                ),
                ("timestamp", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["sender", "created_at"], name="whatsapp_me_sender_5b1f0c_idx"),
                    models.Index(fields=["created_at"], name="whatsapp_me_created_8e2a41_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="QueuedJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "queue_name",
                    models.CharField(
                        choices=[
                            ("lesson", "Lesson"),
                            ("reminder", "Reminder"),
                            ("notification", "Notification"),
                            ("welcome", "Welcome"),
                            ("text", "Text"),
                        ],
                        max_length=20,
                    ),
                ),
                ("job_type", models.CharField(max_length=50)),
                ("idempotency_key", models.CharField(max_length=255)),
                ("payload", models.JSONField(default=dict)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("waiting", "Waiting"),
                            ("active", "Active"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="waiting",
                        max_length=10,
                    ),
                ),
                ("attempts_made", models.PositiveIntegerField(default=0)),
                ("max_attempts", models.PositiveIntegerField(default=3)),
                ("run_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("last_error", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["run_at", "id"],
                "indexes": [
                    models.Index(fields=["queue_name", "status", "run_at"], name="whatsapp_qu_queue_n_3c7d9e_idx"),
                    models.Index(fields=["status", "finished_at"], name="whatsapp_qu_status_a41f62_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["waiting", "active"])),
                        fields=("queue_name", "idempotency_key"),
                        name="unique_pending_job_per_key",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="MessageContext",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("message_id", models.CharField(max_length=255, unique=True)),
                ("phone_number", models.CharField(max_length=32)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("expires_at", models.DateTimeField(default=whatsapp.models.default_context_expiry)),
                (
                    "course",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="message_contexts",
                        to="courses.course",
                    ),
                ),
                (
                    "lesson",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="message_contexts",
                        to="courses.lesson",
                    ),
                ),
                (
                    "quiz",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="message_contexts",
                        to="courses.quiz",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["phone_number", "created_at"], name="whatsapp_me_phone_n_7d0c13_idx"),
                    models.Index(fields=["expires_at"], name="whatsapp_me_expires_f2b8a5_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CourseSchedule",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("recipients", models.JSONField(default=list)),
                ("time_of_day", models.CharField(max_length=5)),
                ("start_date", models.DateField()),
                (
                    "frequency",
                    models.CharField(
                        choices=[("daily", "Daily"), ("weekly", "Weekly"), ("monthly", "Monthly")],
                        max_length=10,
                    ),
                ),
                ("timezone_name", models.CharField(max_length=64)),
                ("current_lesson_index", models.PositiveIntegerField(default=0)),
                ("last_reminder_index", models.IntegerField(default=-1)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("completed", "Completed")],
                        default="active",
                        max_length=10,
                    ),
                ),
                ("next_fire_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "course",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="schedule",
                        to="courses.course",
                    ),
                ),
            ],
        ),
    ]
