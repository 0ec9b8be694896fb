"""In-memory stand-ins for the broker and the external collaborators."""
from django.test import TestCase, override_settings

from orchestration.brokers import QueueStats
from orchestration.collaborators import FetchResult, Generation
from orchestration.exceptions import FatalCollaboratorError, ItemRejected, TransientCollaboratorError


class RecordingBroker:
    published = []
    stats = {}
    reachable = True

    @classmethod
    def reset(cls):
        cls.published = []
        cls.stats = {}
        cls.reachable = True

    def publish(self, queue, message, routing_key=None, priority=0, countdown=None):
        self.published.append(
            {
                "queue": queue,
                "message": message,
                "routing_key": routing_key,
                "priority": priority,
                "countdown": countdown,
            }
        )

    def queue_stats(self, queue):
        if not self.reachable:
            return QueueStats(name=queue, reachable=False)
        waiting, consumers = self.stats.get(queue, (0, 1))
        return QueueStats(name=queue, waiting=waiting, consumers=consumers)

    def is_reachable(self):
        return self.reachable


class FakeConnector:
    items = []
    page_size = 50
    rejected = set()
    # item id -> number of transient failures still to raise
    flaky = {}
    fatal = False
    synced = []
    updates = []

    @classmethod
    def reset(cls):
        cls.items = []
        cls.page_size = 50
        cls.rejected = set()
        cls.flaky = {}
        cls.fatal = False
        cls.synced = []
        cls.updates = []

    def fetch_items(self, connection_id, filters, page):
        start = (page - 1) * self.page_size
        chunk = self.items[start:start + self.page_size]
        return FetchResult(items=chunk, has_more=start + self.page_size < len(self.items))

    def _maybe_fail(self, item_id):
        if self.fatal:
            raise FatalCollaboratorError("Marketplace credentials revoked")
        remaining = self.flaky.get(item_id, 0)
        if remaining:
            self.flaky[item_id] = remaining - 1
            raise TransientCollaboratorError(f"Marketplace timeout on {item_id}")
        if item_id in self.rejected:
            raise ItemRejected(f"Item {item_id} no longer listed")

    def sync_item(self, connection_id, marketplace, item_id):
        self._maybe_fail(item_id)
        self.synced.append(item_id)
        return {"id": item_id}

    def apply_update(self, connection_id, marketplace, item_id, changes):
        self._maybe_fail(item_id)
        self.updates.append((item_id, changes))
        return {"id": item_id, "updated": sorted(changes)}


class FakeTextGenerator:
    confidence = 0.9
    low_confidence = set()
    prompts = []

    @classmethod
    def reset(cls):
        cls.confidence = 0.9
        cls.low_confidence = set()
        cls.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        confidence = self.confidence
        if any(f"product {pid}." in prompt for pid in self.low_confidence):
            confidence = 0.2
        return Generation(text=f"Generated copy for: {prompt}", confidence=confidence)


@override_settings(
    ORCHESTRATION_BROKER="orchestration.tests.fakes.RecordingBroker",
    ORCHESTRATION_CONNECTOR="orchestration.tests.fakes.FakeConnector",
    ORCHESTRATION_TEXT_GENERATOR="orchestration.tests.fakes.FakeTextGenerator",
    JOB_PROGRESS_EVENT_MIN_DELTA=5,
    JOB_RETRY_DELAY_SECONDS=5,
    SCAN_WINDOW_HOURS=24,
    SCAN_MAX_PER_WINDOW=2,
)
class OrchestrationTestCase(TestCase):
    def setUp(self):
        super().setUp()
        RecordingBroker.reset()
        FakeConnector.reset()
        FakeTextGenerator.reset()
