"""Wiring of engine components from configuration."""

import logging
from dataclasses import dataclass

from service_copilot import config
from service_copilot.core.http_store import HttpBusinessStore
from service_copilot.core.knowledge_base import HttpKnowledgeBase
from service_copilot.core.store import BusinessStore, InMemoryBusinessStore
from service_copilot.llm.fake_model import FakeModelService
from service_copilot.llm.model_service import ChatOpenAIModelService, ModelService
from service_copilot.orchestration.orchestrator import ChatOrchestrator
from service_copilot.orchestration.state_store import (
    ConversationStateStore,
    InMemoryConversationStore,
    JsonFileConversationStore,
)
from service_copilot.server.gateway import ChatGateway
from service_copilot.tools.executor import ToolExecutor
from service_copilot.tools.idempotency import IdempotencyLedger
from service_copilot.tools.registry import PermissionGate

logger = logging.getLogger(__name__)


@dataclass
class Components:
    gateway: ChatGateway
    orchestrator: ChatOrchestrator
    executor: ToolExecutor
    ledger: IdempotencyLedger
    business_store: BusinessStore
    state_store: ConversationStateStore
    model: ModelService


def build_components(
    business_store: BusinessStore | None = None,
    state_store: ConversationStateStore | None = None,
    model: ModelService | None = None,
    knowledge_base: HttpKnowledgeBase | None = None,
) -> Components:
    """Assemble the engine, falling back to configured or in-process collaborators."""
    if business_store is None:
        if config.BUSINESS_API_URL:
            business_store = HttpBusinessStore(config.BUSINESS_API_URL)
        else:
            logger.info("BUSINESS_API_URL not set, using in-memory business store")
            business_store = InMemoryBusinessStore()

    if state_store is None:
        if config.CONVERSATION_STORE_DIR:
            state_store = JsonFileConversationStore(config.CONVERSATION_STORE_DIR)
        else:
            state_store = InMemoryConversationStore()

    if model is None:
        if config.OPENAI_API_KEY:
            model = ChatOpenAIModelService(config.OPENAI_API_KEY, config.OPENAI_MODEL)
        else:
            logger.warning("OPENAI_API_KEY not set, using the offline fake model")
            model = FakeModelService()

    if knowledge_base is None and config.KB_API_URL:
        knowledge_base = HttpKnowledgeBase(config.KB_API_URL)

    gate = PermissionGate()
    ledger = IdempotencyLedger()
    executor = ToolExecutor(
        business_store, knowledge_base=knowledge_base, ledger=ledger, gate=gate
    )
    orchestrator = ChatOrchestrator(
        model,
        state_store,
        executor,
        gate=gate,
        knowledge_base=knowledge_base,
        history_limit=config.HISTORY_LIMIT,
    )
    gateway = ChatGateway(orchestrator, state_store, business_store)
    return Components(
        gateway=gateway,
        orchestrator=orchestrator,
        executor=executor,
        ledger=ledger,
        business_store=business_store,
        state_store=state_store,
        model=model,
    )
