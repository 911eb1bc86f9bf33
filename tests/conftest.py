"""Global pytest configuration and fixtures."""

from collections.abc import Generator
from typing import Any

import pytest
import respx

from tests.fixtures.mock_clients import (
    conversation,
    executor,
    ledger,
    mock_knowledge_base,
    orchestrator,
    scripted_model,
    state_store,
)
from tests.fixtures.sample_data import (
    business_store,
    clock,
    free_context,
    pro_context,
)

__all__ = [
    "business_store",
    "clock",
    "conversation",
    "executor",
    "free_context",
    "ledger",
    "mock_knowledge_base",
    "orchestrator",
    "pro_context",
    "scripted_model",
    "state_store",
]


@pytest.fixture
def respx_mock() -> Generator[Any, None, None]:
    """Provide respx mock for testing HTTP requests."""
    with respx.mock as mock:
        yield mock
