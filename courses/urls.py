from django.urls import path

from .views import CourseStatusView, CourseView, LearnerView

# prefixed by courses/
urlpatterns = [
    path("", CourseView.as_view(), name="courses"),
    path("learners/", LearnerView.as_view(), name="learners"),
    path("<int:course_id>/status", CourseStatusView.as_view(), name="course-status"),
    path("<int:course_id>", CourseView.as_view(), name="course-detail"),
]
