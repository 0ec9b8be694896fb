from django.utils.dateparse import parse_datetime
from rest_framework import exceptions, permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.views import APIView

from . import history
from .health import QueueHealthMonitor, monitored_queues
from .lifecycle import JobLifecycleManager
from .models import AuditEventKind, Job, JobStatus, JobType
from .ratelimit import partition_by_eligibility
from .responses import api_response
from .serializers import (
    AuditEventSerializer,
    JobSerializer,
    JobStatusSerializer,
    ProductIdsSerializer,
    QueueHealthSnapshotSerializer,
    ScanSubmitSerializer,
    SyncSubmitSerializer,
    UpdateSubmitSerializer,
)

TENANT_HEADER = "HTTP_X_TENANT_ID"


def _tenant_id(request) -> str:
    return request.META.get(TENANT_HEADER) or str(request.user.id)


def _int_param(request, name: str, default: int, minimum: int = 1, maximum: int = 720) -> int:
    raw = request.query_params.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise exceptions.ValidationError({name: "must be an integer."}) from exc
    if not minimum <= value <= maximum:
        raise exceptions.ValidationError({name: f"must be between {minimum} and {maximum}."})
    return value


def _since_param(request):
    raw = request.query_params.get("since")
    if not raw:
        return None
    since = parse_datetime(raw)
    if since is None:
        raise exceptions.ValidationError({"since": "must be an ISO 8601 datetime."})
    return since


def _accepted(job: Job, **extra):
    return api_response(
        {"jobId": str(job.id), "status": job.status, **extra},
        status_code=status.HTTP_202_ACCEPTED,
    )


class SyncSubmitView(APIView):
    def post(self, request):
        serializer = SyncSubmitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        job = JobLifecycleManager().submit_sync(
            _tenant_id(request),
            str(request.user.id),
            data["connection_id"],
            data["marketplace"],
            filters=data.get("filters"),
            batch_size=data.get("batch_size"),
            estimated_items=data.get("estimated_items"),
            priority=data["priority"],
            max_attempts=data.get("max_attempts"),
        )
        return _accepted(job)


class ScanSubmitView(APIView):
    def post(self, request):
        serializer = ScanSubmitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        job, partition = JobLifecycleManager().submit_scan(
            _tenant_id(request),
            str(request.user.id),
            data["product_ids"],
            marketplace=data.get("marketplace"),
            filters=data.get("filters"),
            batch_size=data.get("batch_size"),
            priority=data["priority"],
            max_attempts=data.get("max_attempts"),
        )
        return _accepted(job, **partition.to_dict())


class ScanEligibilityView(APIView):
    def post(self, request):
        serializer = ProductIdsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        partition = partition_by_eligibility(
            serializer.validated_data["product_ids"], _tenant_id(request)
        )
        return api_response(partition.to_dict())


class UpdateSubmitView(APIView):
    def post(self, request):
        serializer = UpdateSubmitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        job = JobLifecycleManager().submit_update(
            _tenant_id(request),
            str(request.user.id),
            data["connection_id"],
            data["marketplace"],
            data["product_id"],
            changes=data.get("changes"),
            priority=data["priority"],
            max_attempts=data.get("max_attempts"),
        )
        return _accepted(job)


class JobViewSet(viewsets.GenericViewSet):
    serializer_class = JobSerializer

    def get_queryset(self):
        qs = Job.objects.filter(tenant_id=_tenant_id(self.request)).order_by("-created_at")
        status_param = self.request.query_params.get("status")
        if status_param:
            if status_param.lower() not in JobStatus.values:
                raise exceptions.ValidationError({"status": f"unknown status {status_param!r}."})
            qs = qs.filter(status=status_param.lower())
        type_param = self.request.query_params.get("job_type")
        if type_param:
            if type_param.upper() not in JobType.values:
                raise exceptions.ValidationError({"job_type": f"unknown job type {type_param!r}."})
            qs = qs.filter(job_type=type_param.upper())
        if self.request.query_params.get("top_level") in ("1", "true"):
            qs = qs.filter(parent__isnull=True)
        return qs

    def list(self, request):
        queryset = self.get_queryset()
        page = self.paginate_queryset(queryset)
        serializer = JobSerializer(page if page is not None else queryset, many=True)
        if page is not None:
            return self.get_paginated_response(serializer.data)
        return api_response(serializer.data)

    def retrieve(self, request, pk=None):
        job = JobLifecycleManager().get_status(pk, _tenant_id(request))
        return api_response(JobStatusSerializer(job).data)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        job = JobLifecycleManager().cancel(pk, _tenant_id(request))
        return api_response(JobStatusSerializer(job).data)

    @action(detail=True, methods=["get"])
    def timeline(self, request, pk=None):
        job = JobLifecycleManager().get_status(pk, _tenant_id(request))
        events = history.timeline(job.id)
        return api_response(AuditEventSerializer(events, many=True).data)


class HistoryViewSet(viewsets.ViewSet):
    @action(detail=False, methods=["get"])
    def recent(self, request):
        kinds = [k for k in request.query_params.getlist("event") if k in AuditEventKind.values]
        events = history.recent_events(
            _tenant_id(request),
            limit=_int_param(request, "limit", 100, maximum=1000),
            kinds=kinds or None,
        )
        return api_response(AuditEventSerializer(events, many=True).data)

    @action(detail=False, methods=["get"])
    def performance(self, request):
        return api_response(
            history.performance_metrics(_tenant_id(request), since=_since_param(request))
        )

    @action(detail=False, methods=["get"])
    def errors(self, request):
        return api_response(
            history.error_analysis(_tenant_id(request), since=_since_param(request))
        )


class SystemHealthView(APIView):
    permission_classes = [permissions.AllowAny]

    def get(self, request):
        report = QueueHealthMonitor().system_health()
        queues = report.pop("queues")
        report["perQueue"] = {
            name: QueueHealthSnapshotSerializer(snapshot).data if snapshot else None
            for name, snapshot in queues.items()
        }
        code = status.HTTP_200_OK
        if report["overall"] == "unhealthy":
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        return api_response(report, status_code=code)


class QueueHealthListView(APIView):
    def get(self, request):
        queues = QueueHealthMonitor().all_queues_health()
        return api_response(
            {
                name: QueueHealthSnapshotSerializer(snapshot).data if snapshot else None
                for name, snapshot in queues.items()
            }
        )


class UnhealthyQueuesView(APIView):
    def get(self, request):
        snapshots = QueueHealthMonitor().unhealthy_queues()
        return api_response(QueueHealthSnapshotSerializer(snapshots, many=True).data)


class _QueueView(APIView):
    def queue_name(self, name: str) -> str:
        if name not in monitored_queues():
            raise exceptions.NotFound(f"Queue {name!r} is not monitored.")
        return name


class QueueTrendView(_QueueView):
    def get(self, request, queue_name):
        snapshots = QueueHealthMonitor().trend(
            self.queue_name(queue_name), hours=_int_param(request, "hours", 24)
        )
        return api_response(QueueHealthSnapshotSerializer(snapshots, many=True).data)


class QueuePerformanceView(_QueueView):
    def get(self, request, queue_name):
        buckets = QueueHealthMonitor().performance_trend(
            self.queue_name(queue_name), hours=_int_param(request, "hours", 24)
        )
        return api_response(buckets)
