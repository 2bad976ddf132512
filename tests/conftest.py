"""Pytest bootstrap configuration.

Environment defaults are set before any module that reads settings is
imported: in-memory ledger, eager Celery, no external plugins.
"""
import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("PAYMENT__LEDGER__BACKEND", "memory")
os.environ.setdefault("PAYMENT__ENABLED_PLUGINS", '["__external_payment__"]')

from decimal import Decimal  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from application.dtos.payments import CallContext, OperationKind, OperationRequest  # noqa: E402
from application.services.adapter_registry import AdapterRegistry  # noqa: E402
from application.services.payment_orchestrator import PaymentOrchestrator, RetryPolicy  # noqa: E402
from domain.payment.entity import PaymentMethodDescriptor  # noqa: E402
from infrastructure.idempotency.memory_ledger import InMemoryIdempotencyLedger  # noqa: E402
from infrastructure.repositories.payment_method_repository import InMemoryPaymentMethodRepository  # noqa: E402
from tests.payments.stubs import ScriptedGateway  # noqa: E402


ACCOUNT_ID = "acct-1"
PAYMENT_METHOD_ID = "pm-1"

FAST_RETRY = RetryPolicy(max_attempts=3, base_backoff=0, max_backoff=0, call_timeout=1.0)


def make_request(
    kind: str = "charge",
    operation_id: str = "op-1",
    amount: Optional[str] = "10.00",
    currency: Optional[str] = "USD",
    **overrides,
) -> OperationRequest:
    data = {
        "operation_id": operation_id,
        "kind": OperationKind(kind),
        "account_id": ACCOUNT_ID,
        "payment_id": "pay-1",
        "payment_method_id": PAYMENT_METHOD_ID,
        "amount": Decimal(amount) if amount is not None else None,
        "currency": currency,
    }
    data.update(overrides)
    return OperationRequest(**data)


async def build_orchestrator(
    gateway,
    *,
    ledger=None,
    payment_methods=None,
    retry_policy: RetryPolicy = FAST_RETRY,
) -> PaymentOrchestrator:
    """Orchestrator with ``gateway`` registered and pm-1 as the account default."""
    payment_methods = payment_methods or InMemoryPaymentMethodRepository()
    await payment_methods.save(
        PaymentMethodDescriptor(
            account_id=ACCOUNT_ID,
            payment_method_id=PAYMENT_METHOD_ID,
            plugin_name=gateway.plugin_name,
            is_default=True,
            external_payment_method_id="ext-pm-1",
            gateway_props={"token": "tok-1"},
        )
    )
    return PaymentOrchestrator(
        AdapterRegistry([gateway], default_plugin=gateway.plugin_name),
        ledger or InMemoryIdempotencyLedger(),
        payment_methods,
        retry_policy=retry_policy,
    )


@pytest.fixture
def ctx() -> CallContext:
    return CallContext(tenant_id="tenant-1", user_name="tester", reason_code="test")


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def ledger() -> InMemoryIdempotencyLedger:
    return InMemoryIdempotencyLedger()


@pytest.fixture
def payment_methods() -> InMemoryPaymentMethodRepository:
    return InMemoryPaymentMethodRepository()


@pytest_asyncio.fixture
async def orchestrator(gateway, ledger, payment_methods):
    orch = await build_orchestrator(gateway, ledger=ledger, payment_methods=payment_methods)
    yield orch
    await orch.aclose()
