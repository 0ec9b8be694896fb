import logging
from dataclasses import dataclass

from celery import current_app
from django.conf import settings
from django.utils.module_loading import import_string

from .models import JobPriority

logger = logging.getLogger(__name__)

PROCESS_TASK_NAME = "orchestration.process_job"

BROKER_PRIORITIES = {
    JobPriority.CRITICAL: 10,
    JobPriority.HIGH: 8,
    JobPriority.NORMAL: 5,
    JobPriority.LOW: 2,
}


def broker_priority(priority: int) -> int:
    try:
        return BROKER_PRIORITIES[JobPriority(priority)]
    except ValueError:
        return BROKER_PRIORITIES[JobPriority.NORMAL]


@dataclass
class QueueStats:
    name: str
    waiting: int = 0
    consumers: int = 0
    reachable: bool = True


class CeleryBroker:
    """Publishes job messages as Celery tasks and samples queue depth through kombu."""

    def __init__(self, app=None):
        self.app = app or current_app

    def publish(self, queue: str, message: dict, routing_key: str | None = None,
                priority: int = JobPriority.NORMAL, countdown: float | None = None) -> None:
        self.app.send_task(
            PROCESS_TASK_NAME,
            kwargs={"job_id": message["jobId"]},
            queue=queue,
            routing_key=routing_key or queue,
            priority=broker_priority(priority),
            countdown=countdown,
            headers={"orchestration": message},
        )

    def queue_stats(self, queue: str) -> QueueStats:
        try:
            with self.app.connection_for_read() as conn:
                _name, waiting, consumers = conn.default_channel.queue_declare(
                    queue=queue, passive=True
                )
        except Exception as exc:
            # A missing queue or unreachable broker reads as empty and unreachable.
            logger.warning("Could not read stats for queue %s: %s", queue, exc)
            return QueueStats(name=queue, reachable=False)
        return QueueStats(name=queue, waiting=waiting, consumers=consumers)

    def is_reachable(self) -> bool:
        try:
            with self.app.connection_for_read() as conn:
                conn.ensure_connection(max_retries=1)
        except Exception as exc:
            logger.warning("Broker unreachable: %s", exc)
            return False
        return True


def get_broker():
    broker_path = getattr(settings, "ORCHESTRATION_BROKER", "orchestration.brokers.CeleryBroker")
    return import_string(broker_path)()
