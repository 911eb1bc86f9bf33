"""Idempotency ledger deduplicating side-effecting tool calls across retries.

Records are keyed by (user id, operation, client idempotency key). The first
caller claims the key with a PENDING record; only the claim holder performs
the operation, later callers replay its stored result.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from service_copilot.config import IDEMPOTENCY_SWEEP_SECONDS, IDEMPOTENCY_TTL_HOURS
from service_copilot.errors import ToolErrorCode
from service_copilot.tools.results import ToolResult
from service_copilot.utils.hashing import hash_params

RecordKey = tuple[str, str, str]


class IdempotencyStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class IdempotencyRecord(BaseModel):
    user_id: str
    operation: str
    key: str
    params_hash: str
    status: IdempotencyStatus
    result: dict[str, Any] | None = None
    affected_entity_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    expires_at: datetime

    @property
    def record_key(self) -> RecordKey:
        return (self.user_id, self.operation, self.key)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class IdempotencyCheck(BaseModel):
    exists: bool
    record: IdempotencyRecord | None = None
    params_mismatch: bool = False


class IdempotencyStore(ABC):
    """Persistence for idempotency records with insert-or-ignore semantics."""

    @abstractmethod
    async def get(self, key: RecordKey) -> IdempotencyRecord | None: ...

    @abstractmethod
    async def insert_if_absent(
        self, record: IdempotencyRecord, now: datetime
    ) -> tuple[IdempotencyRecord, bool]:
        """Insert ``record`` unless a live record holds its key.

        Returns:
            The stored record and whether this call inserted it
        """

    @abstractmethod
    async def finalize(
        self,
        key: RecordKey,
        status: IdempotencyStatus,
        result: dict[str, Any],
        affected_entity_ids: list[str],
    ) -> bool:
        """Store the outcome of a PENDING record. Finished records are never changed."""

    @abstractmethod
    async def delete(self, key: RecordKey) -> None: ...

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int: ...


class InMemoryIdempotencyStore(IdempotencyStore):
    def __init__(self) -> None:
        self._records: dict[RecordKey, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: RecordKey) -> IdempotencyRecord | None:
        return self._records.get(key)

    async def insert_if_absent(
        self, record: IdempotencyRecord, now: datetime
    ) -> tuple[IdempotencyRecord, bool]:
        async with self._lock:
            existing = self._records.get(record.record_key)
            if existing is not None and not existing.is_expired(now):
                return existing, False
            self._records[record.record_key] = record
            return record, True

    async def finalize(
        self,
        key: RecordKey,
        status: IdempotencyStatus,
        result: dict[str, Any],
        affected_entity_ids: list[str],
    ) -> bool:
        async with self._lock:
            existing = self._records.get(key)
            if existing is None or existing.status != IdempotencyStatus.PENDING:
                return False
            self._records[key] = existing.model_copy(
                update={
                    "status": status,
                    "result": result,
                    "affected_entity_ids": affected_entity_ids,
                }
            )
            return True

    async def delete(self, key: RecordKey) -> None:
        async with self._lock:
            self._records.pop(key, None)

    async def delete_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for key in expired:
                del self._records[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._records)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyLedger:
    """Deduplicates executions of side-effecting operations.

    Store failures fail open: the operation runs without deduplication and
    the error is logged.
    """

    def __init__(
        self,
        store: IdempotencyStore | None = None,
        ttl: timedelta = timedelta(hours=IDEMPOTENCY_TTL_HOURS),
        sweep_interval: int = IDEMPOTENCY_SWEEP_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store if store is not None else InMemoryIdempotencyStore()
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.conflict_count = 0
        self.logger = logging.getLogger(__name__)
        self._sweeper_task: asyncio.Task | None = None

    def _new_record(
        self,
        user_id: str,
        operation: str,
        key: str,
        params_hash: str,
        status: IdempotencyStatus,
        result: ToolResult | None = None,
    ) -> IdempotencyRecord:
        now = self.clock()
        return IdempotencyRecord(
            user_id=user_id,
            operation=operation,
            key=key,
            params_hash=params_hash,
            status=status,
            result=result.model_dump(mode="json") if result else None,
            affected_entity_ids=[e.id for e in result.affected_entities] if result else [],
            created_at=now,
            expires_at=now + self.ttl,
        )

    def _note_mismatch(self, record: IdempotencyRecord, params_hash: str) -> bool:
        if record.params_hash == params_hash:
            return False
        self.conflict_count += 1
        self.logger.warning(
            f"Idempotency key {record.key} for {record.operation} reused with "
            f"different params; replaying the original result"
        )
        return True

    async def check(
        self, user_id: str, operation: str, key: str, params: dict[str, Any]
    ) -> IdempotencyCheck:
        """Look up a live record for the key; expired records are removed."""
        record_key = (user_id, operation, key)
        try:
            record = await self.store.get(record_key)
            if record is None:
                return IdempotencyCheck(exists=False)
            if record.is_expired(self.clock()):
                await self.store.delete(record_key)
                return IdempotencyCheck(exists=False)
        except Exception as e:
            self.logger.error(f"Idempotency check failed for {operation}: {e}")
            return IdempotencyCheck(exists=False)

        mismatch = self._note_mismatch(record, hash_params(params))
        return IdempotencyCheck(exists=True, record=record, params_mismatch=mismatch)

    async def record(
        self,
        user_id: str,
        operation: str,
        key: str,
        params: dict[str, Any],
        result: ToolResult,
    ) -> None:
        """Store a finished result. The first stored result for a key wins."""
        status = IdempotencyStatus.SUCCESS if result.success else IdempotencyStatus.FAILED
        record = self._new_record(
            user_id, operation, key, hash_params(params), status, result
        )
        try:
            stored, inserted = await self.store.insert_if_absent(record, self.clock())
            if not inserted and stored.status == IdempotencyStatus.PENDING:
                await self.store.finalize(
                    stored.record_key, status, record.result or {}, record.affected_entity_ids
                )
        except Exception as e:
            self.logger.error(f"Failed to record idempotency for {operation}: {e}")

    async def execute_with_idempotency(
        self,
        user_id: str,
        operation: str,
        key: str,
        params: dict[str, Any],
        perform: Callable[[], Awaitable[ToolResult]],
    ) -> ToolResult:
        """Run ``perform`` at most once per key.

        Returns:
            The fresh result, or the stored one with ``replayed=True``. A key
            whose first execution is still running yields IDEMPOTENCY_CONFLICT.
        """
        params_hash = hash_params(params)
        claim = self._new_record(
            user_id, operation, key, params_hash, IdempotencyStatus.PENDING
        )
        try:
            existing, inserted = await self.store.insert_if_absent(claim, self.clock())
        except Exception as e:
            self.logger.error(f"Idempotency claim failed for {operation}, running unguarded: {e}")
            return await perform()

        if not inserted:
            self._note_mismatch(existing, params_hash)
            if existing.status == IdempotencyStatus.PENDING or existing.result is None:
                return ToolResult.failure(
                    ToolErrorCode.IDEMPOTENCY_CONFLICT,
                    "This operation is already in progress",
                )
            self.logger.info(f"Replaying stored result for {operation} key {key}")
            replay = ToolResult.model_validate(existing.result)
            return replay.model_copy(update={"replayed": True})

        try:
            result = await perform()
        except BaseException:
            await self._release(claim)
            raise

        status = IdempotencyStatus.SUCCESS if result.success else IdempotencyStatus.FAILED
        try:
            await self.store.finalize(
                claim.record_key,
                status,
                result.model_dump(mode="json"),
                [e.id for e in result.affected_entities],
            )
        except Exception as e:
            self.logger.error(f"Failed to store idempotency result for {operation}: {e}")
        return result

    async def _release(self, claim: IdempotencyRecord) -> None:
        try:
            await self.store.delete(claim.record_key)
        except Exception as e:
            self.logger.error(f"Failed to release idempotency claim {claim.key}: {e}")

    async def sweep_expired(self) -> int:
        try:
            removed = await self.store.delete_expired(self.clock())
        except Exception as e:
            self.logger.error(f"Idempotency sweep failed: {e}")
            return 0
        if removed:
            self.logger.info(f"Swept {removed} expired idempotency records")
        return removed

    # Background sweeper

    def start_sweeper(self) -> None:
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self._sweep_periodically())

    async def _sweep_periodically(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.sweep_expired()
            except asyncio.CancelledError:
                break

    async def stop_sweeper(self) -> None:
        if self._sweeper_task and not self._sweeper_task.done():
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
        self._sweeper_task = None
