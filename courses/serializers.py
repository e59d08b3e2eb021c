from rest_framework import serializers

from .models import Course, Enrollment, Learner, Lesson, Quiz


class QuizSerializer(serializers.ModelSerializer):
    class Meta:
        model = Quiz
        fields = ("id", "question", "options", "correct_option")


class LessonSerializer(serializers.ModelSerializer):
    quiz = QuizSerializer(read_only=True, allow_null=True)

    class Meta:
        model = Lesson
        fields = (
            "id",
            "title",
            "content",
            "day",
            "document",
            "media",
            "external_link",
            "quiz",
        )


class CourseSerializer(serializers.ModelSerializer):
    lessons = LessonSerializer(many=True, read_only=True)

    class Meta:
        model = Course
        fields = (
            "id",
            "name",
            "description",
            "cover_image",
            "status",
            "published_at",
            "total_lessons",
            "total_quizzes",
            "admin_id",
            "created_at",
            "updated_at",
            "lessons",
        )


class LearnerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Learner
        fields = ("id", "name", "surname", "number", "email", "created_at")


class EnrollmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Enrollment
        fields = ("id", "learner", "course", "enrolled_at")
