"""Model service abstraction and the OpenAI-backed implementation."""

import logging
from abc import ABC, abstractmethod
from typing import Literal

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, SecretStr

from service_copilot.config import OPENAI_MODEL


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class Completion(BaseModel):
    content: str
    usage: TokenUsage | None = None


class ModelService(ABC):
    """Chat-completion endpoint used by the orchestrator."""

    @abstractmethod
    async def complete(
        self, messages: list[ChatMessage], temperature: float, max_tokens: int
    ) -> Completion:
        """Run one completion over an ordered message list."""


def to_langchain_messages(messages: list[ChatMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


class ChatOpenAIModelService(ModelService):
    """Model service backed by ``langchain_openai.ChatOpenAI``."""

    def __init__(self, api_key: str, model: str = OPENAI_MODEL) -> None:
        if not api_key:
            raise ValueError("OpenAI API key is required")
        self.api_key = api_key
        self.model = model
        self.logger = logging.getLogger(__name__)

    async def complete(
        self, messages: list[ChatMessage], temperature: float, max_tokens: int
    ) -> Completion:
        llm = ChatOpenAI(
            api_key=SecretStr(self.api_key),
            model=self.model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        response = await llm.ainvoke(to_langchain_messages(messages))

        # Extract string content from response
        content = response.content
        if isinstance(content, list):
            text = " ".join(str(item) for item in content)
        else:
            text = str(content)

        usage = None
        metadata = getattr(response, "usage_metadata", None)
        if metadata:
            usage = TokenUsage(
                input_tokens=metadata.get("input_tokens", 0),
                output_tokens=metadata.get("output_tokens", 0),
                total_tokens=metadata.get("total_tokens", 0),
            )
            self.logger.debug(f"Completion used {usage.total_tokens} tokens")

        return Completion(content=text, usage=usage)
