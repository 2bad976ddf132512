import pytest

from application.ports.payment_gateway import ALL_CAPABILITIES, Capability
from application.services.adapter_registry import AdapterRegistry
from domain.payment.exceptions import AdapterNotRegisteredError, UnsupportedOperationError
from infrastructure.external.payments import build_adapter_registry, get_payment_gateway
from infrastructure.external.payments.external_payment import ExternalPaymentGateway
from tests.payments.stubs import ScriptedGateway


def test_lookup_by_name_and_default():
    scripted = ScriptedGateway()
    external = ExternalPaymentGateway()
    registry = AdapterRegistry([scripted, external], default_plugin="scripted")

    assert registry.get() is scripted
    assert registry.get("__external_payment__") is external
    assert registry.names() == ["__external_payment__", "scripted"]
    assert "scripted" in registry
    assert len(registry) == 2


def test_unknown_plugin():
    registry = AdapterRegistry([ScriptedGateway()])
    with pytest.raises(AdapterNotRegisteredError):
        registry.get("paypal")
    # No default configured
    with pytest.raises(AdapterNotRegisteredError):
        registry.get()


def test_require_checks_capability():
    gateway = ScriptedGateway(capabilities=ALL_CAPABILITIES - {Capability.VOID})
    registry = AdapterRegistry([gateway])

    assert registry.require("scripted", Capability.CHARGE) is gateway
    with pytest.raises(UnsupportedOperationError):
        registry.require("scripted", Capability.VOID)


@pytest.mark.parametrize(
    "adapter,error",
    [
        (object(), TypeError),
        (ScriptedGateway(plugin_name=""), ValueError),
        (ScriptedGateway(capabilities={Capability.AUTHORIZE}), ValueError),
    ],
)
def test_register_rejects_bad_adapters(adapter, error):
    with pytest.raises(error):
        AdapterRegistry([adapter])


def test_duplicate_plugin_name_is_rejected():
    with pytest.raises(ValueError):
        AdapterRegistry([ScriptedGateway(), ScriptedGateway()])


@pytest.mark.asyncio
async def test_aclose_closes_every_adapter_even_if_one_fails():
    class Broken(ScriptedGateway):
        async def aclose(self):
            raise RuntimeError("boom")

    healthy = ScriptedGateway(plugin_name="healthy")
    registry = AdapterRegistry([Broken(plugin_name="broken"), healthy])

    await registry.aclose()

    assert healthy.closed is True


def test_factory_builds_configured_plugins():
    registry = build_adapter_registry(["__external_payment__"], default_plugin="__external_payment__")
    assert isinstance(registry.get(), ExternalPaymentGateway)
    with pytest.raises(ValueError):
        get_payment_gateway("bitcoin")
