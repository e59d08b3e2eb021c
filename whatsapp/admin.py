from django.contrib import admin

from .models import CourseSchedule, Message, MessageContext, QueuedJob


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ("message_id", "direction", "type", "sender", "recipient", "status", "timestamp")
    list_filter = ("direction", "status", "type")
    search_fields = ("message_id", "sender", "recipient")


@admin.register(QueuedJob)
class QueuedJobAdmin(admin.ModelAdmin):
    list_display = ("id", "queue_name", "job_type", "idempotency_key", "status", "attempts_made", "run_at")
    list_filter = ("queue_name", "status")
    search_fields = ("idempotency_key",)


admin.site.register(MessageContext)
admin.site.register(CourseSchedule)
