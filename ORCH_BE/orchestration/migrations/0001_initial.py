import uuid

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


JOB_STATUS_CHOICES = [
    ("queued", "Queued"),
    ("processing", "Processing"),
    ("completed", "Completed"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="AuditEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("job_id", models.UUIDField()),
                ("tenant_id", models.CharField(max_length=64)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("started", "Started"),
                            ("progress", "Progress"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("retry", "Retry"),
                            ("cancelled", "Cancelled"),
                            ("batch_initiated", "Batch initiated"),
                        ],
                        max_length=20,
                    ),
                ),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                ("progress", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, null=True)),
                ("attempt", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("previous_status", models.CharField(blank=True, max_length=20, null=True)),
                ("new_status", models.CharField(blank=True, max_length=20, null=True)),
                ("processing_ms", models.PositiveBigIntegerField(blank=True, null=True)),
                ("queue_wait_ms", models.PositiveBigIntegerField(blank=True, null=True)),
                ("entity_id", models.CharField(blank=True, max_length=128, null=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["job_id", "timestamp"], name="orch_evt_job_ts_idx"),
                    models.Index(fields=["tenant_id", "timestamp"], name="orch_evt_tenant_ts_idx"),
                    models.Index(fields=["kind", "timestamp"], name="orch_evt_kind_ts_idx"),
                    models.Index(fields=["tenant_id", "entity_id", "kind"], name="orch_evt_entity_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="QueueHealthSnapshot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("queue_name", models.CharField(max_length=64)),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                ("waiting", models.PositiveIntegerField(default=0)),
                ("processing", models.PositiveIntegerField(default=0)),
                ("completed", models.PositiveIntegerField(default=0)),
                ("failed", models.PositiveIntegerField(default=0)),
                ("consumers", models.PositiveIntegerField(blank=True, null=True)),
                ("average_processing_ms", models.FloatField(default=0)),
                ("average_wait_ms", models.FloatField(default=0)),
                ("throughput", models.FloatField(default=0)),
                ("is_healthy", models.BooleanField(default=True)),
                ("issues", models.JSONField(blank=True, default=list)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["queue_name", "timestamp"], name="orch_qh_queue_ts_idx"),
                    models.Index(fields=["is_healthy", "timestamp"], name="orch_qh_healthy_ts_idx"),
                    models.Index(fields=["timestamp"], name="orch_qh_ts_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Job",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "job_type",
                    models.CharField(
                        choices=[
                            ("SYNC_PARENT", "Marketplace sync"),
                            ("SYNC_BATCH", "Product sync batch"),
                            ("SCAN_PARENT", "AI optimization scan"),
                            ("SCAN_BATCH", "AI description batch"),
                            ("SINGLE_UPDATE", "Marketplace update"),
                        ],
                        max_length=20,
                    ),
                ),
                ("tenant_id", models.CharField(max_length=64)),
                ("user_id", models.CharField(max_length=64)),
                ("queue_name", models.CharField(max_length=64)),
                ("routing_key", models.CharField(max_length=128)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("status", models.CharField(choices=JOB_STATUS_CHOICES, default="queued", max_length=20)),
                ("progress", models.PositiveSmallIntegerField(default=0)),
                ("progress_reported", models.PositiveSmallIntegerField(default=0)),
                ("child_job_ids", models.JSONField(blank=True, default=list)),
                ("scope_key", models.CharField(blank=True, max_length=255, null=True)),
                ("items_total", models.PositiveIntegerField(default=0)),
                ("items_done", models.PositiveIntegerField(default=0)),
                ("items_failed", models.PositiveIntegerField(default=0)),
                ("estimated_items", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "priority",
                    models.SmallIntegerField(
                        choices=[(10, "low"), (0, "normal"), (-10, "high"), (-20, "critical")],
                        default=0,
                    ),
                ),
                ("attempts", models.PositiveSmallIntegerField(default=0)),
                ("max_attempts", models.PositiveSmallIntegerField(default=3)),
                ("last_error", models.TextField(blank=True, null=True)),
                ("result", models.JSONField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("queue_wait_ms", models.PositiveBigIntegerField(blank=True, null=True)),
                ("processing_ms", models.PositiveBigIntegerField(blank=True, null=True)),
                (
                    "parent",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="children",
                        to="orchestration.job",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["tenant_id", "status"], name="orch_job_tenant_status_idx"),
                    models.Index(fields=["tenant_id", "created_at"], name="orch_job_tenant_created_idx"),
                    models.Index(fields=["queue_name", "status"], name="orch_job_queue_status_idx"),
                    models.Index(fields=["job_type", "status"], name="orch_job_type_status_idx"),
                    models.Index(fields=["created_at"], name="orch_job_created_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("scope_key__isnull", False), ("status__in", ["queued", "processing"])),
                        fields=("tenant_id", "scope_key"),
                        name="unique_active_job_per_scope",
                    )
                ],
            },
        ),
    ]
