"""Redis implementation of IdempotencyLedger.

Records are JSON strings under ``<prefix>:<operation_id>``; creation relies on
``SET NX``, every later transition runs under a per-key Redis lock. In-flight
records are indexed in a sorted set scored by their last activity so the
reconciliation sweep can find stale ones without scanning keys.
"""
from __future__ import annotations

import json
import socket
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from redis import asyncio as aioredis

from application.dtos.payments import ResultEnvelope
from core.logging_config import get_logger
from domain.payment.entity import Fresh, IdempotencyRecord, OperationState
from domain.payment.exceptions import ConcurrentOperationError, OperationNotFoundError
from domain.payment.repository import IdempotencyLedger, LedgerDecision
from infrastructure.idempotency.memory_ledger import decide


logger = get_logger(__name__)


def record_to_json(record: IdempotencyRecord) -> str:
    return json.dumps(record.to_dict(), default=str)


def record_from_json(raw: str) -> IdempotencyRecord:
    data = json.loads(raw)
    return IdempotencyRecord(
        operation_id=data["operation_id"],
        kind=data["kind"],
        request_fingerprint=data["request_fingerprint"],
        request=data.get("request") or {},
        plugin_name=data.get("plugin_name"),
        dispatch_properties=data.get("dispatch_properties") or {},
        state=OperationState(data["state"]),
        result=ResultEnvelope.model_validate(data["result"]) if data.get("result") else None,
        error=data.get("error"),
        undetermined=bool(data.get("undetermined")),
        attempts=int(data.get("attempts") or 0),
        created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None,
        last_attempt_at=datetime.fromisoformat(data["last_attempt_at"]) if data.get("last_attempt_at") else None,
    )


def create_redis(url: str, *, max_connections: int = 10) -> aioredis.Redis:
    """Build an asyncio Redis client with TCP keepalive where the platform supports it."""
    keepalive_opts = {}
    if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
        keepalive_opts = {
            socket.TCP_KEEPIDLE: 1,
            socket.TCP_KEEPINTVL: 1,
            socket.TCP_KEEPCNT: 3,
        }
    return aioredis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
        socket_keepalive=True,
        socket_keepalive_options=keepalive_opts,
    )


class RedisIdempotencyLedger(IdempotencyLedger):
    def __init__(
        self,
        client: aioredis.Redis,
        *,
        key_prefix: str = "payments:ledger",
        lock_timeout: int = 10,
        lock_blocking_timeout: int = 5,
        retention_seconds: Optional[int] = None,
        owns_client: bool = False,
    ) -> None:
        self._client = client
        self._prefix = key_prefix.strip(":")
        self._lock_timeout = lock_timeout
        self._lock_blocking_timeout = lock_blocking_timeout
        self._retention = retention_seconds
        self._owns_client = owns_client

    def _key(self, operation_id: str) -> str:
        return f"{self._prefix}:op:{operation_id}"

    @property
    def _index(self) -> str:
        return f"{self._prefix}:in_flight"

    @asynccontextmanager
    async def _locked(self, operation_id: str):
        lock = self._client.lock(
            f"{self._prefix}:lock:{operation_id}",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise ConcurrentOperationError(operation_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except Exception as e:
                logger.error("ledger_lock_release_failed", operation_id=operation_id, error=str(e))

    async def _load(self, operation_id: str) -> Optional[IdempotencyRecord]:
        raw = await self._client.get(self._key(operation_id))
        return record_from_json(raw) if raw is not None else None

    async def _require(self, operation_id: str) -> IdempotencyRecord:
        record = await self._load(operation_id)
        if record is None:
            raise OperationNotFoundError(operation_id)
        return record

    async def _store(self, record: IdempotencyRecord) -> IdempotencyRecord:
        key = self._key(record.operation_id)
        async with self._client.pipeline(transaction=True) as pipe:
            if record.is_terminal:
                if self._retention:
                    pipe.set(key, record_to_json(record), ex=self._retention)
                else:
                    pipe.set(key, record_to_json(record))
                pipe.zrem(self._index, record.operation_id)
            else:
                pipe.set(key, record_to_json(record))
                score = (record.last_attempt_at or record.created_at).timestamp()
                pipe.zadd(self._index, {record.operation_id: score})
            await pipe.execute()
        return record

    async def begin_or_reuse(self, record: IdempotencyRecord) -> LedgerDecision:  # type: ignore[override]
        record = record.copy()
        record.state = OperationState.IN_FLIGHT
        created = await self._client.set(self._key(record.operation_id), record_to_json(record), nx=True)
        if created:
            await self._client.zadd(self._index, {record.operation_id: record.created_at.timestamp()})
            return Fresh(record)
        existing = await self._load(record.operation_id)
        if existing is None:
            # Purged between SET NX and GET; the caller may simply retry
            raise ConcurrentOperationError(record.operation_id)
        return decide(existing)

    async def record_attempt(  # type: ignore[override]
        self,
        operation_id: str,
        plugin_name: Optional[str] = None,
        properties: Optional[dict] = None,
    ) -> IdempotencyRecord:
        async with self._locked(operation_id):
            record = await self._require(operation_id)
            record.record_attempt(plugin_name, properties)
            return await self._store(record)

    async def complete(self, operation_id: str, result: ResultEnvelope) -> IdempotencyRecord:  # type: ignore[override]
        async with self._locked(operation_id):
            record = await self._require(operation_id)
            record.mark_completed(result)
            return await self._store(record)

    async def fail(self, operation_id: str, error: dict, result: Optional[ResultEnvelope] = None) -> IdempotencyRecord:  # type: ignore[override]
        async with self._locked(operation_id):
            record = await self._require(operation_id)
            record.mark_failed(error, result)
            return await self._store(record)

    async def mark_undetermined(self, operation_id: str, reason: str) -> IdempotencyRecord:  # type: ignore[override]
        async with self._locked(operation_id):
            record = await self._require(operation_id)
            record.mark_undetermined(reason)
            return await self._store(record)

    async def release(self, operation_id: str) -> bool:  # type: ignore[override]
        async with self._locked(operation_id):
            record = await self._load(operation_id)
            if record is None or record.state != OperationState.IN_FLIGHT or record.attempts > 0:
                return False
            await self._drop(operation_id)
            return True

    async def _drop(self, operation_id: str) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(operation_id))
            pipe.zrem(self._index, operation_id)
            deleted, _ = await pipe.execute()
        return int(deleted)

    async def get(self, operation_id: str) -> Optional[IdempotencyRecord]:  # type: ignore[override]
        return await self._load(operation_id)

    async def purge(self, operation_id: str) -> bool:  # type: ignore[override]
        async with self._locked(operation_id):
            return await self._drop(operation_id) > 0

    async def list_in_flight(self, older_than: Optional[datetime] = None, limit: int = 100) -> List[IdempotencyRecord]:  # type: ignore[override]
        max_score = older_than.timestamp() if older_than is not None else "+inf"
        ids = await self._client.zrangebyscore(self._index, "-inf", max_score, start=0, num=limit)
        records: List[IdempotencyRecord] = []
        for operation_id in ids:
            record = await self._load(operation_id)
            if record is not None and record.state == OperationState.IN_FLIGHT:
                records.append(record)
        return records

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
