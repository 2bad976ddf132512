"""Redis ledger against a live server; skipped unless REDIS_URL is set."""
import os
import uuid

import pytest
import pytest_asyncio

from application.dtos.payments import OperationStatus, ResultEnvelope
from domain.payment.entity import Completed, Fresh, IdempotencyRecord, InFlight, OperationState
from infrastructure.idempotency.redis_ledger import RedisIdempotencyLedger, create_redis


REDIS_URL = os.getenv("REDIS_URL")

pytestmark = [
    pytest.mark.redis,
    pytest.mark.skipif(not REDIS_URL, reason="REDIS_URL not set"),
]


@pytest_asyncio.fixture
async def redis_ledger():
    client = create_redis(REDIS_URL)
    prefix = f"test:ledger:{uuid.uuid4().hex}"
    ledger = RedisIdempotencyLedger(client, key_prefix=prefix, retention_seconds=60, owns_client=True)
    yield ledger
    keys = [k async for k in client.scan_iter(match=f"{prefix}:*")]
    if keys:
        await client.delete(*keys)
    await ledger.aclose()


def _record(operation_id: str) -> IdempotencyRecord:
    return IdempotencyRecord(operation_id=operation_id, kind="charge", request_fingerprint="fp")


@pytest.mark.asyncio
async def test_lifecycle(redis_ledger):
    assert isinstance(await redis_ledger.begin_or_reuse(_record("op-1")), Fresh)
    assert isinstance(await redis_ledger.begin_or_reuse(_record("op-1")), InFlight)

    await redis_ledger.record_attempt("op-1", "scripted")
    assert [r.operation_id for r in await redis_ledger.list_in_flight()] == ["op-1"]

    await redis_ledger.complete("op-1", ResultEnvelope(status=OperationStatus.SUCCESS))
    decision = await redis_ledger.begin_or_reuse(_record("op-1"))

    assert isinstance(decision, Completed)
    assert decision.record.attempts == 1
    assert await redis_ledger.list_in_flight() == []


@pytest.mark.asyncio
async def test_release_and_purge(redis_ledger):
    await redis_ledger.begin_or_reuse(_record("op-2"))
    assert await redis_ledger.release("op-2") is True
    assert await redis_ledger.get("op-2") is None

    await redis_ledger.begin_or_reuse(_record("op-3"))
    await redis_ledger.mark_undetermined("op-3", "timeout")
    record = await redis_ledger.get("op-3")
    assert record.state == OperationState.IN_FLIGHT and record.undetermined

    assert await redis_ledger.purge("op-3") is True
    assert await redis_ledger.list_in_flight() == []
