"""
External collaborators used by the batch processors.

Concrete marketplace connectors and text generators live outside this app and
are wired in through settings, the same way the broker is.
"""
from dataclasses import dataclass, field

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string


@dataclass
class FetchResult:
    items: list = field(default_factory=list)
    has_more: bool = False


@dataclass
class Generation:
    text: str
    confidence: float


class MarketplaceConnector:
    def fetch_items(self, connection_id: str, filters: dict, page: int) -> FetchResult:
        """Return one page of item ids (or item dicts) matching ``filters``."""
        raise NotImplementedError

    def sync_item(self, connection_id: str, marketplace: str, item_id: str) -> dict:
        """Pull one item into the local catalogue. Raise ItemRejected to skip it."""
        raise NotImplementedError

    def apply_update(self, connection_id: str, marketplace: str, item_id: str,
                     changes: dict) -> dict:
        raise NotImplementedError


class TextGenerator:
    def generate(self, prompt: str) -> Generation:
        raise NotImplementedError


def _load(setting_name: str):
    path = getattr(settings, setting_name, None)
    if not path:
        raise ImproperlyConfigured(f"{setting_name} is not set.")
    return import_string(path)()


def get_connector() -> MarketplaceConnector:
    return _load("ORCHESTRATION_CONNECTOR")


def get_text_generator() -> TextGenerator:
    return _load("ORCHESTRATION_TEXT_GENERATOR")


def describe_prompt(product_id: str, marketplace: str | None) -> str:
    prompt = f"Write an optimized product description for product {product_id}."
    if marketplace:
        prompt += f" Target marketplace: {marketplace}."
    return prompt
