from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import (
    HistoryViewSet,
    JobViewSet,
    QueueHealthListView,
    QueuePerformanceView,
    QueueTrendView,
    ScanEligibilityView,
    ScanSubmitView,
    SyncSubmitView,
    SystemHealthView,
    UnhealthyQueuesView,
    UpdateSubmitView,
)


router = DefaultRouter()
router.register("jobs", JobViewSet, basename="jobs")
router.register("history", HistoryViewSet, basename="history")

urlpatterns = [
    path("sync/", SyncSubmitView.as_view(), name="sync-submit"),
    path("scans/", ScanSubmitView.as_view(), name="scan-submit"),
    path("scans/eligibility/", ScanEligibilityView.as_view(), name="scan-eligibility"),
    path("updates/", UpdateSubmitView.as_view(), name="update-submit"),
    path("health/", SystemHealthView.as_view(), name="health"),
    path("health/queues/", QueueHealthListView.as_view(), name="health-queues"),
    path(
        "health/queues/unhealthy/",
        UnhealthyQueuesView.as_view(),
        name="health-queues-unhealthy",
    ),
    path(
        "health/queues/<str:queue_name>/trend/",
        QueueTrendView.as_view(),
        name="health-queue-trend",
    ),
    path(
        "health/queues/<str:queue_name>/performance/",
        QueuePerformanceView.as_view(),
        name="health-queue-performance",
    ),
    path("", include(router.urls)),
]
