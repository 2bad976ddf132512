import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from application.dtos.payments import OperationStatus, ResultEnvelope
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import Completed, Failed, Fresh, InFlight, IdempotencyRecord, OperationState
from domain.payment.exceptions import OperationNotFoundError
from domain.payment.service import PaymentDomainService
from infrastructure.idempotency.memory_ledger import InMemoryIdempotencyLedger
from infrastructure.idempotency.redis_ledger import record_from_json, record_to_json
from tests.conftest import make_request


def _record(operation_id: str = "op-1", **kwargs) -> IdempotencyRecord:
    return IdempotencyRecord(operation_id=operation_id, kind="charge", request_fingerprint="fp", **kwargs)


@pytest.mark.asyncio
async def test_first_begin_is_fresh_then_in_flight():
    ledger = InMemoryIdempotencyLedger()

    first = await ledger.begin_or_reuse(_record())
    second = await ledger.begin_or_reuse(_record())

    assert isinstance(first, Fresh)
    assert isinstance(second, InFlight)


@pytest.mark.asyncio
async def test_terminal_records_are_reused():
    ledger = InMemoryIdempotencyLedger()
    await ledger.begin_or_reuse(_record("done"))
    await ledger.complete("done", ResultEnvelope(status=OperationStatus.SUCCESS))
    await ledger.begin_or_reuse(_record("lost"))
    await ledger.fail("lost", {"message": "declined"})

    done = await ledger.begin_or_reuse(_record("done"))
    lost = await ledger.begin_or_reuse(_record("lost"))

    assert isinstance(done, Completed) and done.result.status == OperationStatus.SUCCESS
    assert isinstance(lost, Failed) and lost.record.error == {"message": "declined"}


@pytest.mark.asyncio
async def test_concurrent_begin_yields_one_fresh():
    ledger = InMemoryIdempotencyLedger()

    decisions = await asyncio.gather(*(ledger.begin_or_reuse(_record()) for _ in range(10)))

    assert sum(isinstance(d, Fresh) for d in decisions) == 1


@pytest.mark.asyncio
async def test_terminal_state_is_final():
    ledger = InMemoryIdempotencyLedger()
    await ledger.begin_or_reuse(_record())
    await ledger.complete("op-1", ResultEnvelope(status=OperationStatus.SUCCESS))

    with pytest.raises(DomainValidationException):
        await ledger.fail("op-1", {"message": "late failure"})
    with pytest.raises(DomainValidationException):
        await ledger.mark_undetermined("op-1", "late timeout")
    assert (await ledger.get("op-1")).state == OperationState.COMPLETED


@pytest.mark.asyncio
async def test_undetermined_stays_in_flight():
    ledger = InMemoryIdempotencyLedger()
    await ledger.begin_or_reuse(_record())
    await ledger.record_attempt("op-1", "scripted")

    record = await ledger.mark_undetermined("op-1", "timeout")

    assert record.state == OperationState.IN_FLIGHT
    assert record.undetermined is True
    assert record.error == {"reason": "timeout"}
    # Resolution after reconciliation clears the flag
    resolved = await ledger.complete("op-1", ResultEnvelope(status=OperationStatus.SUCCESS))
    assert resolved.undetermined is False


@pytest.mark.asyncio
async def test_release_only_before_any_attempt():
    ledger = InMemoryIdempotencyLedger()
    await ledger.begin_or_reuse(_record("a"))
    await ledger.begin_or_reuse(_record("b"))
    await ledger.record_attempt("b")

    assert await ledger.release("a") is True
    assert await ledger.get("a") is None
    assert await ledger.release("b") is False
    assert await ledger.get("b") is not None


@pytest.mark.asyncio
async def test_returned_records_are_copies():
    ledger = InMemoryIdempotencyLedger()
    await ledger.begin_or_reuse(_record())

    record = await ledger.get("op-1")
    record.attempts = 99

    assert (await ledger.get("op-1")).attempts == 0


@pytest.mark.asyncio
async def test_unknown_operation_raises():
    ledger = InMemoryIdempotencyLedger()
    with pytest.raises(OperationNotFoundError):
        await ledger.record_attempt("missing")
    assert await ledger.purge("missing") is False


@pytest.mark.asyncio
async def test_list_in_flight_filters_by_age_and_limit():
    ledger = InMemoryIdempotencyLedger()
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    for i in range(3):
        await ledger.begin_or_reuse(_record(f"old-{i}", created_at=old + timedelta(seconds=i)))
    await ledger.begin_or_reuse(_record("new"))
    await ledger.begin_or_reuse(_record("done"))
    await ledger.complete("done", ResultEnvelope(status=OperationStatus.SUCCESS))

    cutoff = datetime.now(timezone.utc) - timedelta(minutes=5)
    stale = await ledger.list_in_flight(older_than=cutoff, limit=2)
    everything = await ledger.list_in_flight()

    assert [r.operation_id for r in stale] == ["old-0", "old-1"]
    assert {r.operation_id for r in everything} == {"old-0", "old-1", "old-2", "new"}


@pytest.mark.asyncio
async def test_purge_removes_record():
    ledger = InMemoryIdempotencyLedger()
    await ledger.begin_or_reuse(_record())

    assert await ledger.purge("op-1") is True
    assert isinstance(await ledger.begin_or_reuse(_record()), Fresh)


@pytest.mark.asyncio
async def test_locks_are_dropped_once_unused():
    ledger = InMemoryIdempotencyLedger()
    await ledger.begin_or_reuse(_record("kept"))
    await ledger.begin_or_reuse(_record("purged"))
    await ledger.begin_or_reuse(_record("released"))

    await ledger.record_attempt("kept")
    await ledger.purge("purged")
    await ledger.release("released")

    assert ledger._locks == {}


@pytest.mark.asyncio
async def test_lock_is_kept_while_contended():
    ledger = InMemoryIdempotencyLedger()
    await ledger.begin_or_reuse(_record())
    order = []

    async def attempt(tag):
        await ledger.record_attempt("op-1")
        order.append(tag)

    async with ledger._locked("op-1"):
        waiters = [asyncio.create_task(attempt(i)) for i in range(3)]
        await asyncio.sleep(0)
        assert ledger._locks["op-1"][1] == 4
    await asyncio.gather(*waiters)

    assert order == [0, 1, 2]
    assert (await ledger.get("op-1")).attempts == 3
    assert ledger._locks == {}


def test_record_survives_json_storage():
    record = PaymentDomainService.new_record(make_request())
    record.record_attempt("scripted", {"token": "tok-1"})
    record.mark_completed(ResultEnvelope(status=OperationStatus.SUCCESS, operation_id="op-1"))

    restored = record_from_json(record_to_json(record))

    assert restored.state == OperationState.COMPLETED
    assert restored.result == record.result
    assert restored.request == record.request
    assert restored.created_at == record.created_at
    assert restored.attempts == 1
    assert restored.plugin_name == "scripted"
    assert restored.dispatch_properties == {"token": "tok-1"}


def test_fingerprint_ignores_amount_for_void():
    a = PaymentDomainService.fingerprint(make_request(kind="void", amount="1.00"))
    b = PaymentDomainService.fingerprint(make_request(kind="void", amount=None, currency=None))
    c = PaymentDomainService.fingerprint(make_request(kind="charge"))
    d = PaymentDomainService.fingerprint(make_request(kind="charge", amount="10.0"))

    assert a == b
    assert c == d
    assert a != c
