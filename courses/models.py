from django.db import models


class Course(models.Model):
    STATUS_DRAFT = "DRAFT"
    STATUS_PUBLISHED = "PUBLISHED"
    STATUS_ARCHIVED = "ARCHIVED"
    STATUS_CHOICES = [
        (STATUS_DRAFT, "Draft"),
        (STATUS_PUBLISHED, "Published"),
        (STATUS_ARCHIVED, "Archived"),
    ]

    name = models.CharField(max_length=255)
    description = models.TextField()
    cover_image = models.URLField(max_length=500, blank=True, null=True)
    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default=STATUS_DRAFT, db_index=True
    )
    published_at = models.DateTimeField(null=True, blank=True)
    total_lessons = models.PositiveIntegerField(default=0)
    total_quizzes = models.PositiveIntegerField(default=0)
    admin_id = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class Lesson(models.Model):
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="lessons")
    title = models.CharField(max_length=255)
    content = models.TextField()
    day = models.PositiveIntegerField()
    document = models.URLField(max_length=500, blank=True, null=True)
    media = models.URLField(max_length=500, blank=True, null=True)
    external_link = models.URLField(max_length=500, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["day"]  # delivery order
        unique_together = [("course", "day")]

    def __str__(self):
        return f"{self.title} (Course: {self.course.name})"


class Quiz(models.Model):
    lesson = models.OneToOneField(Lesson, on_delete=models.CASCADE, related_name="quiz")
    question = models.TextField()
    options = models.JSONField(default=list)
    correct_option = models.TextField()

    class Meta:
        verbose_name_plural = "Quizzes"

    def __str__(self):
        return self.question


class Learner(models.Model):
    name = models.CharField(max_length=255)
    surname = models.CharField(max_length=255, blank=True, default="")
    number = models.CharField(max_length=32, unique=True)
    email = models.EmailField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} {self.surname} ({self.number})".strip()


class Enrollment(models.Model):
    learner = models.ForeignKey(
        Learner, on_delete=models.CASCADE, related_name="enrollments"
    )
    course = models.ForeignKey(
        Course, on_delete=models.CASCADE, related_name="enrollments"
    )
    enrolled_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("learner", "course")

    def __str__(self):
        return f"{self.learner.number} - {self.course.name}"


class CourseProgress(models.Model):
    learner = models.ForeignKey(
        Learner, on_delete=models.CASCADE, related_name="course_progress"
    )
    course = models.ForeignKey(
        Course, on_delete=models.CASCADE, related_name="progress"
    )
    completed_lessons = models.PositiveIntegerField(default=0)
    progress_percent = models.PositiveSmallIntegerField(default=0)  # 0 to 100
    correct_answers = models.PositiveIntegerField(default=0)
    quiz_score = models.PositiveSmallIntegerField(default=0)  # 0 to 100
    is_completed = models.BooleanField(default=False)
    completed_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(auto_now_add=True)
    last_activity_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("learner", "course")

    def __str__(self):
        return f"{self.learner.number} - {self.course.name} ({self.progress_percent}%)"


class LessonProgress(models.Model):
    learner = models.ForeignKey(
        Learner, on_delete=models.CASCADE, related_name="lesson_progress"
    )
    lesson = models.ForeignKey(
        Lesson, on_delete=models.CASCADE, related_name="progress"
    )
    is_completed = models.BooleanField(default=False)
    completed_at = models.DateTimeField(null=True, blank=True)
    quiz_score = models.PositiveSmallIntegerField(null=True, blank=True)  # 0 or 100
    quiz_reply = models.TextField(null=True, blank=True)
    started_at = models.DateTimeField(auto_now_add=True)
    last_activity_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("learner", "lesson")

    def __str__(self):
        return f"{self.learner.number} - {self.lesson.title}"
