import logging

from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import Course
from .serializers import CourseSerializer, EnrollmentSerializer, LearnerSerializer
from .services.course import CourseService, CourseValidationError
from .services.learners import LearnerService

logger = logging.getLogger(__name__)


def _schedule_options(data):
    return {
        "time_of_day": data.get("time_of_day") or "09:00",
        "start_date": data.get("start_date"),
        "frequency": data.get("frequency") or "daily",
        "timezone": data.get("timezone"),
    }


def _error_status(error):
    if "not found" in str(error).lower():
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_400_BAD_REQUEST


@method_decorator(csrf_exempt, name="dispatch")
class CourseView(APIView):
    authentication_classes = []
    permission_classes = []

    def post(self, request):
        """Create a course with lessons, quizzes and enrollments"""
        data = request.data
        try:
            result = CourseService.create_course(
                data.get("course") or {},
                data.get("lessons") or [],
                data.get("learner_ids") or [],
                **_schedule_options(data),
            )
        except CourseValidationError as e:
            return Response(
                {"success": False, "error": str(e)},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except Exception:
            logger.exception("Error creating course")
            return Response(
                {"success": False, "error": "Internal server error"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return Response(
            {
                "success": True,
                "message": "Course created successfully",
                "data": {
                    "course": CourseSerializer(result["course"]).data,
                    "enrollments": EnrollmentSerializer(result["enrollments"], many=True).data,
                    "schedule": result["schedule"],
                },
            },
            status=status.HTTP_201_CREATED,
        )

    def delete(self, request, course_id):
        """Delete a course"""
        result = CourseService.delete_course(course_id)
        if result.get("success"):
            return Response(
                {"success": True, "message": result.get("message")},
                status=status.HTTP_200_OK,
            )
        return Response(
            {"success": False, "error": result.get("error", "Unknown error")},
            status=_error_status(result.get("error")),
        )


@method_decorator(csrf_exempt, name="dispatch")
class CourseStatusView(APIView):
    authentication_classes = []
    permission_classes = []

    def put(self, request, course_id):
        """Publish or archive a course"""
        new_status = str(request.data.get("status") or "").upper()
        if new_status == Course.STATUS_PUBLISHED:
            result = CourseService.publish_course(course_id, **_schedule_options(request.data))
        elif new_status == Course.STATUS_ARCHIVED:
            result = CourseService.archive_course(course_id)
        else:
            return Response(
                {"success": False, "error": "Status must be PUBLISHED or ARCHIVED"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        if not result.get("success"):
            return Response(
                {"success": False, "error": result.get("error", "Unknown error")},
                status=_error_status(result.get("error")),
            )
        data = result["data"]
        return Response(
            {
                "success": True,
                "message": f"Course {new_status.lower()}",
                "data": {
                    "course": CourseSerializer(data["course"]).data,
                    "schedule": data.get("schedule"),
                },
            },
            status=status.HTTP_200_OK,
        )


@method_decorator(csrf_exempt, name="dispatch")
class LearnerView(APIView):
    authentication_classes = []
    permission_classes = []

    def post(self, request):
        """Register or update a learner"""
        result = LearnerService.register_learner(request.data)
        if not result.get("success"):
            return Response(
                {"success": False, "error": result.get("error")},
                status=status.HTTP_400_BAD_REQUEST,
            )
        return Response(
            {
                "success": True,
                "message": "Learner registered" if result["created"] else "Learner updated",
                "data": LearnerSerializer(result["data"]).data,
            },
            status=status.HTTP_201_CREATED if result["created"] else status.HTTP_200_OK,
        )
