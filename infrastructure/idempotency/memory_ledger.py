"""In-memory implementation of IdempotencyLedger.

Single-process only. Useful for local dev and tests.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from application.dtos.payments import ResultEnvelope
from domain.payment.entity import Completed, Failed, Fresh, IdempotencyRecord, InFlight, OperationState
from domain.payment.exceptions import OperationNotFoundError
from domain.payment.repository import IdempotencyLedger, LedgerDecision


def decide(existing: IdempotencyRecord) -> LedgerDecision:
    if existing.state == OperationState.COMPLETED:
        return Completed(existing)
    if existing.state == OperationState.FAILED:
        return Failed(existing)
    return InFlight(existing)


class InMemoryIdempotencyLedger(IdempotencyLedger):
    def __init__(self) -> None:
        self._records: dict[str, IdempotencyRecord] = {}
        # operation_id -> (lock, holders and waiters); dropped when unused
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _locked(self, operation_id: str):
        lock, users = self._locks.get(operation_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[operation_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[operation_id]
            if users > 1:
                self._locks[operation_id] = (lock, users - 1)
            else:
                del self._locks[operation_id]

    def _require(self, operation_id: str) -> IdempotencyRecord:
        record = self._records.get(operation_id)
        if record is None:
            raise OperationNotFoundError(operation_id)
        return record

    async def begin_or_reuse(self, record: IdempotencyRecord) -> LedgerDecision:  # type: ignore[override]
        async with self._locked(record.operation_id):
            existing = self._records.get(record.operation_id)
            if existing is not None:
                return decide(existing.copy())
            stored = record.copy()
            stored.state = OperationState.IN_FLIGHT
            self._records[record.operation_id] = stored
            return Fresh(stored.copy())

    async def record_attempt(  # type: ignore[override]
        self,
        operation_id: str,
        plugin_name: Optional[str] = None,
        properties: Optional[dict] = None,
    ) -> IdempotencyRecord:
        async with self._locked(operation_id):
            record = self._require(operation_id)
            record.record_attempt(plugin_name, properties)
            return record.copy()

    async def complete(self, operation_id: str, result: ResultEnvelope) -> IdempotencyRecord:  # type: ignore[override]
        async with self._locked(operation_id):
            record = self._require(operation_id)
            record.mark_completed(result)
            return record.copy()

    async def fail(self, operation_id: str, error: dict, result: Optional[ResultEnvelope] = None) -> IdempotencyRecord:  # type: ignore[override]
        async with self._locked(operation_id):
            record = self._require(operation_id)
            record.mark_failed(error, result)
            return record.copy()

    async def mark_undetermined(self, operation_id: str, reason: str) -> IdempotencyRecord:  # type: ignore[override]
        async with self._locked(operation_id):
            record = self._require(operation_id)
            record.mark_undetermined(reason)
            return record.copy()

    async def release(self, operation_id: str) -> bool:  # type: ignore[override]
        async with self._locked(operation_id):
            record = self._records.get(operation_id)
            if record is None or record.state != OperationState.IN_FLIGHT or record.attempts > 0:
                return False
            del self._records[operation_id]
            return True

    async def get(self, operation_id: str) -> Optional[IdempotencyRecord]:  # type: ignore[override]
        record = self._records.get(operation_id)
        return record.copy() if record else None

    async def purge(self, operation_id: str) -> bool:  # type: ignore[override]
        async with self._locked(operation_id):
            return self._records.pop(operation_id, None) is not None

    async def list_in_flight(self, older_than: Optional[datetime] = None, limit: int = 100) -> List[IdempotencyRecord]:  # type: ignore[override]
        records = [r for r in self._records.values() if r.state == OperationState.IN_FLIGHT]
        if older_than is not None:
            records = [r for r in records if (r.last_attempt_at or r.created_at) <= older_than]
        records.sort(key=lambda r: r.created_at)
        return [r.copy() for r in records[:limit]]
