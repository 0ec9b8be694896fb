import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "orch_be.settings")

app = Celery("orch_be")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
