"""Business data access: entity store implementations and knowledge base."""

from service_copilot.core.http_store import HttpBusinessStore
from service_copilot.core.knowledge_base import HttpKnowledgeBase, KbSearchResponse
from service_copilot.core.models import BillingMethod, ChargePreview, EntityKind, SearchPage
from service_copilot.core.store import BusinessStore, InMemoryBusinessStore

__all__ = [
    "BusinessStore",
    "InMemoryBusinessStore",
    "HttpBusinessStore",
    "HttpKnowledgeBase",
    "KbSearchResponse",
    "BillingMethod",
    "ChargePreview",
    "EntityKind",
    "SearchPage",
]
