from decimal import Decimal

import pytest

from application.dtos.payments import OperationKind, OperationStatus, Page, ResultEnvelope
from application.ports.payment_gateway import ALL_CAPABILITIES, Capability
from application.services.pagination import PaginationCursor, compute_has_more
from domain.payment.exceptions import PaymentValidationError, UnsupportedOperationError
from tests.conftest import build_orchestrator
from tests.payments.stubs import ScriptedGateway


def _records(n: int) -> list[ResultEnvelope]:
    return [
        ResultEnvelope(
            status=OperationStatus.SUCCESS,
            kind=OperationKind.CHARGE,
            payment_id=f"pay-{i}",
            amount_processed=Decimal("1.00"),
        )
        for i in range(n)
    ]


def _fetcher(items, *, report_total=True, overfill=0):
    calls = []

    async def fetch(search_key, offset, limit):
        calls.append((offset, limit))
        return Page(
            items=items[offset:offset + limit + overfill],
            offset=offset,
            limit=limit,
            total_count=len(items) if report_total else None,
        )

    return fetch, calls


@pytest.mark.parametrize(
    "offset,limit,count,total,expected",
    [
        (0, 10, 10, 25, True),
        (20, 10, 5, 25, False),
        (0, 10, 10, None, True),
        (20, 10, 5, None, False),
        (0, 10, 0, 25, False),
        (10, 10, 10, 20, False),
    ],
)
def test_compute_has_more(offset, limit, count, total, expected):
    assert compute_has_more(offset, limit, count, total) is expected


@pytest.mark.asyncio
@pytest.mark.parametrize("report_total", [True, False])
async def test_walks_25_records_in_pages_of_10(report_total):
    fetch, _ = _fetcher(_records(25), report_total=report_total)
    cursor = PaginationCursor(fetch)

    sizes, flags = [], []
    offset = 0
    while True:
        items, has_more = await cursor.next_page("*", offset, 10)
        sizes.append(len(items))
        flags.append(has_more)
        if not has_more:
            break
        offset += len(items)

    assert sizes == [10, 10, 5]
    assert flags == [True, True, False]


@pytest.mark.asyncio
async def test_exact_multiple_without_total_ends_on_empty_page():
    fetch, calls = _fetcher(_records(20), report_total=False)
    cursor = PaginationCursor(fetch)

    items = [item async for item in cursor.iterate("*", limit=10)]

    assert len(items) == 20
    assert calls == [(0, 10), (10, 10), (20, 10)]


@pytest.mark.asyncio
async def test_iterate_fetches_one_page_at_a_time():
    fetch, calls = _fetcher(_records(25))
    cursor = PaginationCursor(fetch)

    seen = []
    async for item in cursor.iterate("*", limit=10):
        seen.append(item.payment_id)
        if len(seen) == 5:
            break

    assert seen == [f"pay-{i}" for i in range(5)]
    assert calls == [(0, 10)]


@pytest.mark.asyncio
async def test_limit_is_capped_and_overfull_pages_truncated():
    fetch, calls = _fetcher(_records(50), overfill=3)
    cursor = PaginationCursor(fetch, max_page_size=20)

    page = await cursor.page("*", 0, 500)

    assert calls == [(0, 20)]
    assert page.limit == 20
    assert len(page.items) == 20
    assert page.has_more is True


@pytest.mark.asyncio
@pytest.mark.parametrize("offset,limit", [(-1, 10), (0, 0), (0, -5)])
async def test_bad_bounds_are_rejected_before_fetch(offset, limit):
    fetch, calls = _fetcher(_records(5))
    with pytest.raises(PaymentValidationError):
        await PaginationCursor(fetch).page("*", offset, limit)
    assert calls == []


@pytest.mark.asyncio
async def test_orchestrator_search_payments(ctx):
    gateway = ScriptedGateway()
    gateway.records = _records(25)
    orch = await build_orchestrator(gateway)

    page = await orch.search_payments("*", ctx, offset=20, limit=10)
    streamed = [e async for e in orch.iter_payments("*", ctx, page_size=10)]

    assert len(page.items) == 5
    assert page.total_count == 25
    assert page.has_more is False
    assert len(streamed) == 25


@pytest.mark.asyncio
async def test_search_without_capability_is_unsupported(ctx):
    gateway = ScriptedGateway(capabilities=ALL_CAPABILITIES - {Capability.SEARCH_REFUNDS})
    orch = await build_orchestrator(gateway)

    with pytest.raises(UnsupportedOperationError):
        await orch.search_refunds("*", ctx)
