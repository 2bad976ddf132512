from decimal import Decimal

import pytest
from pydantic import ValidationError

from application.dtos.payments import Currency, HostedPageDescriptorFields
from application.ports.payment_gateway import ALL_CAPABILITIES, Capability
from application.services.adapter_registry import AdapterRegistry
from application.services.payment_orchestrator import PaymentOrchestrator
from domain.payment.exceptions import UnsupportedOperationError
from infrastructure.external.payments.external_payment import ExternalPaymentGateway
from infrastructure.idempotency.memory_ledger import InMemoryIdempotencyLedger
from infrastructure.repositories.payment_method_repository import InMemoryPaymentMethodRepository
from tests.conftest import build_orchestrator
from tests.payments.stubs import ScriptedGateway


def test_fields_are_immutable_and_normalized():
    fields = HostedPageDescriptorFields(
        amount=Decimal("25.00"),
        currency="eur",
        custom_fields={"campaign": "spring", "sku": 42},
        customer={"email": "a@example.com"},
    )

    assert fields.currency == Currency.EUR
    assert fields.custom_field_map == {"campaign": "spring", "sku": "42"}
    assert fields.customer.email == "a@example.com"
    with pytest.raises(ValidationError):
        fields.amount = Decimal("1")
    with pytest.raises(TypeError):
        fields.custom_field_map["campaign"] = "other"


@pytest.mark.asyncio
async def test_external_plugin_builds_post_form(ctx):
    orch = PaymentOrchestrator(
        AdapterRegistry([ExternalPaymentGateway(form_url="https://pay.test/form")]),
        InMemoryIdempotencyLedger(),
        InMemoryPaymentMethodRepository(),
    )
    fields = HostedPageDescriptorFields(
        amount=Decimal("25.00"),
        currency="USD",
        order="ord-7",
        return_url="https://shop.test/done",
        custom_fields=[("campaign", "spring")],
    )

    descriptor = await orch.build_hosted_page_descriptor(
        "acct-9", fields, ctx, plugin_name="__external_payment__", properties={"channel": "web"}
    )

    assert descriptor.form_method == "POST"
    assert descriptor.form_url == "https://pay.test/form"
    assert descriptor.form_fields == {
        "accountId": "acct-9",
        "amount": "25.00",
        "currency": "USD",
        "order": "ord-7",
        "returnUrl": "https://shop.test/done",
        "campaign": "spring",
    }
    assert descriptor.properties == {"channel": "web"}


@pytest.mark.asyncio
async def test_forward_url_overrides_form_target(ctx):
    gateway = ExternalPaymentGateway()
    descriptor = await gateway.build_form_descriptor(
        "acct-9", HostedPageDescriptorFields(forward_url="https://elsewhere.test"), {}, ctx
    )
    assert descriptor.form_url == "https://elsewhere.test"
    assert descriptor.form_fields == {"accountId": "acct-9"}


@pytest.mark.asyncio
async def test_hosted_page_resolves_plugin_from_payment_method(ctx):
    gateway = ScriptedGateway()
    orch = await build_orchestrator(gateway)

    descriptor = await orch.build_hosted_page_descriptor(
        "acct-1", HostedPageDescriptorFields(), ctx, payment_method_id="pm-1"
    )

    assert descriptor.form_url == "https://gateway.test/pay"
    assert descriptor.properties["token"] == "tok-1"


@pytest.mark.asyncio
async def test_plugin_without_hosted_pages_is_unsupported(ctx):
    gateway = ScriptedGateway(capabilities=ALL_CAPABILITIES - {Capability.HOSTED_PAGE})
    orch = await build_orchestrator(gateway)

    with pytest.raises(UnsupportedOperationError):
        await orch.build_hosted_page_descriptor("acct-1", HostedPageDescriptorFields(), ctx)
