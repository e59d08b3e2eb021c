from django.contrib import admin

from .models import (
    Course,
    CourseProgress,
    Enrollment,
    Learner,
    Lesson,
    LessonProgress,
    Quiz,
)

admin.site.register(Course)
admin.site.register(Lesson)
admin.site.register(Quiz)
admin.site.register(Learner)
admin.site.register(Enrollment)
admin.site.register(CourseProgress)
admin.site.register(LessonProgress)
