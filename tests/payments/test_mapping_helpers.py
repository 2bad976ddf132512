from decimal import Decimal

import pytest

from application.dtos.payments import Currency, OperationStatus
from infrastructure.external.payments.base import BasePaymentClient, from_minor, parse_currency, to_minor


class _MapClient(BasePaymentClient):
    plugin_name = "stripe"


def test_provider_status_mapping():
    c = _MapClient()
    assert c._map_status("succeeded") == OperationStatus.SUCCESS
    assert c._map_status("requires_capture") == OperationStatus.SUCCESS
    assert c._map_status("processing") == OperationStatus.PENDING
    assert c._map_status("requires_payment_method") == OperationStatus.FAILED


def test_unknown_status_is_never_final():
    c = _MapClient()
    assert c._map_status("brand_new_state") == OperationStatus.PENDING
    assert c._map_status("brand_new_state", default=OperationStatus.FAILED) == OperationStatus.FAILED


@pytest.mark.parametrize(
    "amount,currency,minor",
    [
        (Decimal("10.00"), Currency.USD, 1000),
        (Decimal("0.99"), Currency.EUR, 99),
        (Decimal("500"), Currency.JPY, 500),
    ],
)
def test_minor_units(amount, currency, minor):
    assert to_minor(amount, currency) == minor
    assert from_minor(minor, currency) == amount


def test_from_minor_needs_both_parts():
    assert from_minor(None, Currency.USD) is None
    assert from_minor(100, None) is None


def test_parse_currency():
    assert parse_currency("usd") == Currency.USD
    assert parse_currency("") is None
    assert parse_currency("XXX") is None
