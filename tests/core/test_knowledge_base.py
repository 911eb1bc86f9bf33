"""Tests for the knowledge-base client and support question detection."""

import json
from typing import Any

import httpx
import pytest

from service_copilot.core.knowledge_base import (
    HttpKnowledgeBase,
    KbResult,
    format_context,
    is_support_question,
)
from service_copilot.errors import StoreUnavailableError

KB_URL = "http://kb.test"


@pytest.mark.unit
class TestSupportQuestions:
    @pytest.mark.parametrize(
        "text",
        [
            "How do I issue a boleto?",
            "what is a work order",
            "the export is not working",
            "Can I change my plan?",
        ],
    )
    def test_support_questions(self, text: str) -> None:
        assert is_support_question(text) is True

    @pytest.mark.parametrize("text", ["list customers", "create customer Acme", "yes"])
    def test_commands(self, text: str) -> None:
        assert is_support_question(text) is False

    def test_format_context(self) -> None:
        context = format_context(
            [KbResult(title="Boletos", content="Due in 1 day"), KbResult(content="Other")]
        )

        assert context == "[1] Boletos\nDue in 1 day\n\n[2] Article 2\nOther"


@pytest.mark.unit
class TestHttpKnowledgeBase:
    async def test_search(self, respx_mock: Any) -> None:
        route = respx_mock.post(f"{KB_URL}/search").mock(
            return_value=httpx.Response(
                200,
                json={
                    "results": [
                        {"id": "a1", "title": "Boletos", "content": "Due in 1 day", "score": 0.92},
                        {"id": "a2", "title": "Noise", "content": "Unrelated", "score": 0.2},
                    ],
                    "totalResults": 2,
                },
            )
        )

        response = await HttpKnowledgeBase(KB_URL).search(
            "boleto due date", top_k=3, min_score=0.5, category="billing"
        )

        assert json.loads(route.calls.last.request.read()) == {
            "query": "boleto due date",
            "topK": 3,
            "minScore": 0.5,
            "category": "billing",
        }
        assert [r.id for r in response.results] == ["a1"]
        assert response.total_results == 2
        assert response.formatted_context == "[1] Boletos\nDue in 1 day"

    async def test_no_results(self, respx_mock: Any) -> None:
        respx_mock.post(f"{KB_URL}/search").mock(
            return_value=httpx.Response(200, json={"results": []})
        )

        response = await HttpKnowledgeBase(KB_URL).search("anything")

        assert response.results == []
        assert response.formatted_context is None

    async def test_failure(self, respx_mock: Any) -> None:
        respx_mock.post(f"{KB_URL}/search").mock(return_value=httpx.Response(500))

        with pytest.raises(StoreUnavailableError):
            await HttpKnowledgeBase(KB_URL).search("anything")
