"""Persistence for conversation snapshots and message history."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal
from uuid import uuid4

import aiofiles  # type: ignore
from pydantic import BaseModel, Field

from service_copilot.errors import ConversationNotFoundError, StaleStateError
from service_copilot.orchestration.state import (
    ConversationSnapshot,
    ConversationState,
    Message,
)


class ConversationRecord(BaseModel):
    snapshot: ConversationSnapshot
    messages: list[Message] = Field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStateStore(ABC):
    """Versioned conversation storage.

    Subclasses provide raw record reads and writes; this class serializes
    read-modify-write cycles and enforces the optimistic version check.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._lock = asyncio.Lock()

    @abstractmethod
    async def _read(self, conversation_id: str) -> ConversationRecord | None: ...

    @abstractmethod
    async def _write(self, record: ConversationRecord) -> None: ...

    async def _require(self, conversation_id: str) -> ConversationRecord:
        record = await self._read(conversation_id)
        if record is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return record

    async def create(
        self, user_id: str, conversation_id: str | None = None
    ) -> ConversationSnapshot:
        now = self.clock()
        snapshot = ConversationSnapshot(
            conversation_id=conversation_id or str(uuid4()),
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            if await self._read(snapshot.conversation_id) is not None:
                raise ValueError(f"Conversation {snapshot.conversation_id} already exists")
            await self._write(ConversationRecord(snapshot=snapshot))
        return snapshot

    async def load(self, conversation_id: str) -> ConversationSnapshot | None:
        record = await self._read(conversation_id)
        return record.snapshot if record else None

    async def save(
        self, snapshot: ConversationSnapshot, expected_version: int
    ) -> ConversationSnapshot:
        """Persist ``snapshot`` if the stored version still equals ``expected_version``.

        Raises:
            StaleStateError: Another turn saved since the snapshot was loaded
            ConversationNotFoundError: No such conversation
        """
        async with self._lock:
            record = await self._require(snapshot.conversation_id)
            current = record.snapshot.version
            if current != expected_version:
                raise StaleStateError(snapshot.conversation_id, expected_version, current)
            saved = snapshot.model_copy(
                update={"version": current + 1, "updated_at": self.clock()}
            )
            await self._write(record.model_copy(update={"snapshot": saved}))
        return saved

    async def reset(self, conversation_id: str) -> ConversationSnapshot:
        """Force the conversation back to IDLE, discarding any pending plan."""
        async with self._lock:
            record = await self._require(conversation_id)
            saved = record.snapshot.model_copy(
                update={
                    "state": ConversationState.IDLE,
                    "pending_plan": None,
                    "version": record.snapshot.version + 1,
                    "updated_at": self.clock(),
                }
            )
            await self._write(record.model_copy(update={"snapshot": saved}))
        self.logger.info(f"Conversation {conversation_id} reset to IDLE")
        return saved

    async def append_message(
        self, conversation_id: str, role: Literal["user", "assistant"], content: str
    ) -> Message:
        message = Message(role=role, content=content, created_at=self.clock())
        async with self._lock:
            record = await self._require(conversation_id)
            await self._write(
                record.model_copy(update={"messages": [*record.messages, message]})
            )
        return message

    async def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """Last ``limit`` messages, oldest first."""
        record = await self._read(conversation_id)
        if record is None or limit <= 0:
            return []
        return record.messages[-limit:]

    async def message_count(self, conversation_id: str) -> int:
        record = await self._read(conversation_id)
        return len(record.messages) if record else 0


class InMemoryConversationStore(ConversationStateStore):
    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        super().__init__(clock)
        self._records: dict[str, ConversationRecord] = {}

    async def _read(self, conversation_id: str) -> ConversationRecord | None:
        record = self._records.get(conversation_id)
        return record.model_copy(deep=True) if record else None

    async def _write(self, record: ConversationRecord) -> None:
        self._records[record.snapshot.conversation_id] = record.model_copy(deep=True)


class JsonFileConversationStore(ConversationStateStore):
    """One JSON document per conversation under ``directory``."""

    def __init__(
        self, directory: str | Path, clock: Callable[[], datetime] = _utcnow
    ) -> None:
        super().__init__(clock)
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        safe_id = "".join(c for c in conversation_id if c.isalnum() or c in "-_")
        return self.directory / f"{safe_id}.json"

    async def _read(self, conversation_id: str) -> ConversationRecord | None:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        async with aiofiles.open(path) as f:
            data = await f.read()
        return ConversationRecord.model_validate(json.loads(data))

    async def _write(self, record: ConversationRecord) -> None:
        path = self._path(record.snapshot.conversation_id)
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(record.model_dump(mode="json"), indent=2))
        tmp_path.replace(path)
