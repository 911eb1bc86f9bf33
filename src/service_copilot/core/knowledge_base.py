"""Knowledge-base search client used to ground support answers."""

import logging
import re
from typing import Any

import httpx
from pydantic import BaseModel, Field

from service_copilot.config import KB_API_URL
from service_copilot.errors import StoreUnavailableError
from service_copilot.utils.constants import USER_AGENT

SUPPORT_PATTERNS = [
    r"\bhow (do|can|does|to)\b",
    r"\bwhat (is|are|does)\b",
    r"\bwhere (is|can|do)\b",
    r"\bwhy\b",
    r"\bhelp\b",
    r"\berror\b",
    r"\bproblem\b",
    r"\bissue\b",
    r"\bnot working\b",
    r"\bsupport\b",
    r"\btutorial\b",
    r"\bexplain\b",
]


class KbResult(BaseModel):
    id: str = ""
    title: str = ""
    content: str
    category: str | None = None
    score: float = 0.0


class KbSearchResponse(BaseModel):
    results: list[KbResult] = Field(default_factory=list)
    total_results: int = 0
    formatted_context: str | None = None


def is_support_question(text: str) -> bool:
    """Heuristic: does the message look like a how-to or troubleshooting question?"""
    lowered = text.lower()
    if lowered.rstrip().endswith("?"):
        return True
    return any(re.search(pattern, lowered) for pattern in SUPPORT_PATTERNS)


def format_context(results: list[KbResult]) -> str:
    """Render results as numbered context blocks for the system prompt."""
    blocks = []
    for index, result in enumerate(results, start=1):
        title = result.title or f"Article {index}"
        blocks.append(f"[{index}] {title}\n{result.content}")
    return "\n\n".join(blocks)


class HttpKnowledgeBase:
    """Client for the knowledge-base search API."""

    def __init__(self, base_url: str = KB_API_URL, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def search(
        self,
        query: str,
        top_k: int = 5,
        min_score: float = 0.0,
        category: str | None = None,
    ) -> KbSearchResponse:
        """Search knowledge-base articles.

        Args:
            query: Free-text question
            top_k: Maximum number of results
            min_score: Results scoring below this are dropped
            category: Optional category filter

        Returns:
            KbSearchResponse with formatted context filled in when results exist

        Raises:
            StoreUnavailableError: The service could not be reached or failed
        """
        payload: dict[str, Any] = {"query": query, "topK": top_k, "minScore": min_score}
        if category:
            payload["category"] = category

        try:
            async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
                response = await client.post(
                    f"{self.base_url}/search", json=payload, timeout=self.timeout
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            self.logger.warning(f"Knowledge base search failed: {e}")
            raise StoreUnavailableError(f"Knowledge base unavailable: {e}") from e

        data = response.json()
        results = [
            KbResult(**item)
            for item in data.get("results", [])
            if float(item.get("score", 0.0)) >= min_score
        ][:top_k]

        return KbSearchResponse(
            results=results,
            total_results=data.get("totalResults", len(results)),
            formatted_context=format_context(results) if results else None,
        )
