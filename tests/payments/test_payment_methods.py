import pytest

from application.dtos.payments import PaymentMethodDetail, PaymentMethodInfo
from application.services.adapter_registry import AdapterRegistry
from application.services.payment_orchestrator import PaymentOrchestrator
from domain.payment.entity import PaymentMethodDescriptor
from domain.payment.exceptions import BusinessDeclineError, PaymentMethodNotFoundError, PaymentValidationError
from infrastructure.external.payments.external_payment import ExternalPaymentGateway
from infrastructure.idempotency.memory_ledger import InMemoryIdempotencyLedger
from infrastructure.repositories.payment_method_repository import InMemoryPaymentMethodRepository
from tests.conftest import FAST_RETRY, build_orchestrator
from tests.payments.stubs import ScriptedGateway


def _orchestrator(*gateways, repo=None) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        AdapterRegistry(gateways, default_plugin=gateways[0].plugin_name),
        InMemoryIdempotencyLedger(),
        repo or InMemoryPaymentMethodRepository(),
        retry_policy=FAST_RETRY,
    )


@pytest.mark.asyncio
async def test_add_payment_method_stores_descriptor(ctx):
    orch = _orchestrator(ExternalPaymentGateway())

    descriptor = await orch.add_payment_method(
        "acct-9", "pm-a", PaymentMethodDetail(properties={"label": "wire"}), ctx, set_default=True
    )

    assert descriptor.plugin_name == "__external_payment__"
    assert descriptor.is_default is True
    assert descriptor.external_payment_method_id.startswith("ext-pm-")
    assert descriptor.gateway_props == {"label": "wire"}
    assert (await orch.payment_methods.get_default("acct-9")).payment_method_id == "pm-a"


@pytest.mark.asyncio
async def test_adding_an_existing_method_is_rejected(ctx):
    orch = _orchestrator(ExternalPaymentGateway())
    await orch.add_payment_method("acct-9", "pm-a", PaymentMethodDetail(), ctx)

    with pytest.raises(PaymentValidationError):
        await orch.add_payment_method("acct-9", "pm-a", PaymentMethodDetail(), ctx)


@pytest.mark.asyncio
async def test_single_default_per_account(ctx):
    orch = _orchestrator(ExternalPaymentGateway())
    await orch.add_payment_method("acct-9", "pm-a", PaymentMethodDetail(), ctx, set_default=True)
    await orch.add_payment_method("acct-9", "pm-b", PaymentMethodDetail(), ctx)

    await orch.set_default_payment_method("acct-9", "pm-b", ctx)

    methods = await orch.list_payment_methods("acct-9", ctx)
    assert {m.payment_method_id: m.is_default for m in methods} == {"pm-a": False, "pm-b": True}
    detail = await orch.get_payment_method_detail("acct-9", "pm-b", ctx)
    assert detail.is_default is True


@pytest.mark.asyncio
async def test_delete_removes_locally_and_at_gateway(ctx):
    gateway = ExternalPaymentGateway()
    orch = _orchestrator(gateway)
    await orch.add_payment_method("acct-9", "pm-a", PaymentMethodDetail(), ctx)

    await orch.delete_payment_method("acct-9", "pm-a", ctx)

    assert await orch.list_payment_methods("acct-9", ctx) == []
    with pytest.raises(PaymentMethodNotFoundError):
        await orch.get_payment_method_detail("acct-9", "pm-a", ctx)
    with pytest.raises(BusinessDeclineError):
        await gateway.get_payment_method_detail("acct-9", "pm-a", {}, ctx)


@pytest.mark.asyncio
async def test_refresh_mirrors_gateway_view(ctx):
    gateway = ScriptedGateway()
    repo = InMemoryPaymentMethodRepository()
    orch = await build_orchestrator(gateway, payment_methods=repo)
    # pm-1 is known locally; the gateway now reports pm-2 as the only method
    gateway.methods["acct-1"] = [
        PaymentMethodInfo(account_id="acct-1", payment_method_id="pm-2", is_default=True, external_payment_method_id="gw-2")
    ]

    methods = await orch.list_payment_methods("acct-1", ctx, refresh_from_gateway=True)

    assert [(m.payment_method_id, m.is_default, m.external_payment_method_id) for m in methods] == [
        ("pm-2", True, "gw-2")
    ]
    assert [i.payment_method_id for i in gateway.reset_calls[0]] == ["pm-2"]


@pytest.mark.asyncio
async def test_refresh_keeps_other_plugins_methods(ctx):
    gateway = ScriptedGateway()
    repo = InMemoryPaymentMethodRepository()
    await repo.save(PaymentMethodDescriptor("acct-1", "pm-cash", "__external_payment__", is_default=True))
    orch = _orchestrator(gateway, ExternalPaymentGateway(), repo=repo)
    gateway.methods["acct-1"] = [
        PaymentMethodInfo(account_id="acct-1", payment_method_id="pm-card", is_default=False)
    ]

    methods = await orch.list_payment_methods("acct-1", ctx, refresh_from_gateway=True, plugin_name="scripted")

    assert {m.payment_method_id: m.is_default for m in methods} == {"pm-cash": True, "pm-card": False}


@pytest.mark.asyncio
async def test_repository_keeps_first_of_several_reported_defaults():
    repo = InMemoryPaymentMethodRepository()

    await repo.replace_for_plugin(
        "acct-1",
        "scripted",
        [
            PaymentMethodDescriptor("acct-1", "pm-a", "scripted", is_default=True),
            PaymentMethodDescriptor("acct-1", "pm-b", "scripted", is_default=True),
        ],
    )

    assert (await repo.get_default("acct-1")).payment_method_id == "pm-a"
    assert not (await repo.get("acct-1", "pm-b")).is_default


@pytest.mark.asyncio
async def test_queries_resolve_plugin_from_payment_method(ctx):
    gateway = ScriptedGateway(plugin_name="other")
    orch = await build_orchestrator(gateway)

    assert await orch.get_payment_info("acct-1", "pay-1", ctx, payment_method_id="pm-1") == []
    with pytest.raises(PaymentMethodNotFoundError):
        await orch.get_payment_info("acct-1", "pay-1", ctx, payment_method_id="pm-x")
