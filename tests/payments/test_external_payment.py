import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from application.dtos.payments import OperationKind, OperationStatus, PaymentMethodDetail
from application.services.adapter_registry import AdapterRegistry
from application.services.payment_orchestrator import PaymentOrchestrator
from domain.payment.entity import OperationState
from domain.payment.exceptions import BusinessDeclineError, PaymentSignatureError
from domain.payment.service import PaymentDomainService
from infrastructure.external.payments.external_payment import SIGNATURE_HEADER, ExternalPaymentGateway
from infrastructure.idempotency.memory_ledger import InMemoryIdempotencyLedger
from infrastructure.repositories.payment_method_repository import InMemoryPaymentMethodRepository
from tests.conftest import FAST_RETRY, make_request


@pytest.fixture
def external():
    return ExternalPaymentGateway()


async def _orchestrator(external, ctx):
    orch = PaymentOrchestrator(
        AdapterRegistry([external], default_plugin=external.plugin_name),
        InMemoryIdempotencyLedger(),
        InMemoryPaymentMethodRepository(),
        retry_policy=FAST_RETRY,
    )
    await orch.add_payment_method("acct-1", "pm-1", PaymentMethodDetail(), ctx, set_default=True)
    return orch


@pytest.mark.asyncio
async def test_authorize_capture_refund_flow(external, ctx):
    orch = await _orchestrator(external, ctx)

    auth = await orch.authorize(make_request(kind="authorize", operation_id="op-a"), ctx)
    cap = await orch.capture(make_request(kind="capture", operation_id="op-c"), ctx)
    ref = await orch.refund(make_request(kind="refund", operation_id="op-r", amount="4.00"), ctx)

    assert auth.gateway_reference_id.startswith("ext-")
    assert cap.amount_processed == Decimal("10.00")
    assert ref.amount_processed == Decimal("4.00")
    history = await orch.get_payment_info("acct-1", "pay-1", ctx, payment_method_id="pm-1")
    assert [e.kind for e in history] == [OperationKind.AUTHORIZE, OperationKind.CAPTURE]
    refunds = await orch.get_refund_info("acct-1", "pay-1", ctx, plugin_name="__external_payment__")
    assert [e.operation_id for e in refunds] == ["op-r"]


@pytest.mark.asyncio
async def test_refund_beyond_captured_amount_is_declined(external, ctx):
    orch = await _orchestrator(external, ctx)
    await orch.charge(make_request(operation_id="op-c"), ctx)
    await orch.refund(make_request(kind="refund", operation_id="op-r1", amount="8.00"), ctx)

    with pytest.raises(BusinessDeclineError) as exc_info:
        await orch.refund(make_request(kind="refund", operation_id="op-r2", amount="3.00"), ctx)

    assert exc_info.value.gateway_error_code == "REFUND_EXCEEDS_PAYMENT"
    record = await orch.get_operation("op-r2")
    assert record.state == OperationState.FAILED


@pytest.mark.asyncio
async def test_search_by_key(external, ctx):
    orch = await _orchestrator(external, ctx)
    await orch.charge(make_request(operation_id="op-1", payment_id="pay-1"), ctx)
    await orch.charge(make_request(operation_id="op-2", payment_id="pay-2"), ctx)

    everything = await orch.search_payments("*", ctx)
    one = await orch.search_payments("pay-2", ctx)
    methods = await orch.search_payment_methods("acct-1", ctx)

    assert everything.total_count == 2
    assert [e.operation_id for e in one.items] == ["op-2"]
    assert [m.payment_method_id for m in methods.items] == ["pm-1"]


@pytest.mark.asyncio
async def test_notification_parsing(external, ctx):
    payload = json.dumps(
        {"notification_id": "n-1", "status": "PROCESSED", "operation_id": "op-9", "kind": "charge", "amount": "5.00", "currency": "usd"}
    ).encode()

    notification = await external.process_notification(payload, {}, {}, ctx)

    assert notification.status == OperationStatus.SUCCESS
    assert notification.kind == OperationKind.CHARGE
    assert notification.amount == Decimal("5.00")
    assert notification.currency.value == "USD"
    assert notification.acknowledged is True
    # No webhook secret configured
    assert notification.verified is False


@pytest.mark.asyncio
async def test_unknown_notification_status_is_pending(external, ctx):
    notification = await external.process_notification(b'{"status": "WHATEVER"}', {}, {}, ctx)
    assert notification.status == OperationStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[1, 2]",
        b'{"status": "PROCESSED", "kind": "payout"}',
        b'{"status": "PROCESSED", "amount": "ten"}',
        b'{"status": "PROCESSED", "amount": "NaN"}',
    ],
)
async def test_malformed_notification_is_rejected(external, ctx, payload):
    with pytest.raises(PaymentSignatureError):
        await external.process_notification(payload, {}, {}, ctx)


def _sign(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


@pytest.mark.asyncio
async def test_signed_notification_is_verified(ctx):
    gateway = ExternalPaymentGateway(webhook_secret="s3cret")
    payload = b'{"status": "PROCESSED", "operation_id": "op-9", "kind": "charge"}'

    notification = await gateway.process_notification(payload, {"x-payment-signature": _sign("s3cret", payload)}, {}, ctx)

    assert notification.verified is True
    assert notification.operation_id == "op-9"


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {SIGNATURE_HEADER: "deadbeef"}])
async def test_bad_signature_is_rejected(ctx, headers):
    gateway = ExternalPaymentGateway(webhook_secret="s3cret")
    with pytest.raises(PaymentSignatureError):
        await gateway.process_notification(b'{"status": "PROCESSED"}', headers, {}, ctx)


@pytest.mark.asyncio
async def test_signed_notification_settles_operation(ctx):
    gateway = ExternalPaymentGateway(webhook_secret="s3cret")
    orch = await _orchestrator(gateway, ctx)
    await orch.ledger.begin_or_reuse(PaymentDomainService.new_record(make_request()))
    await orch.ledger.record_attempt("op-1", gateway.plugin_name)
    payload = json.dumps({"status": "PROCESSED", "operation_id": "op-1", "kind": "charge", "amount": "10.00", "currency": "USD"}).encode()

    await orch.process_notification(gateway.plugin_name, payload, ctx, headers={SIGNATURE_HEADER: _sign("s3cret", payload)})

    record = await orch.get_operation("op-1")
    assert record.state == OperationState.COMPLETED
    assert record.result.amount_processed == Decimal("10.00")
