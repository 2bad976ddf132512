"""
支付 API 端到端测试（内置 __external_payment__ 插件 + 内存账本）
"""
import json

import pytest
from fastapi.testclient import TestClient

from main import app


HEADERS = {"X-Tenant-ID": "tenant-1", "X-User-Name": "api-tester"}
BASE = "/api/v1/payments"


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _add_method(client, account_id="acct-api", payment_method_id="pm-api"):
    r = client.post(
        f"{BASE}/accounts/{account_id}/payment-methods",
        json={"payment_method_id": payment_method_id, "set_default": True},
        headers=HEADERS,
    )
    assert r.status_code == 200, r.text
    return r.json()["data"]


def _operation(operation_id, payment_id="pay-api", amount="20.00", **extra):
    body = {
        "operation_id": operation_id,
        "account_id": "acct-api",
        "payment_id": payment_id,
        "payment_method_id": "pm-api",
        "amount": amount,
        "currency": "USD",
    }
    body.update(extra)
    return body


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["code"] == 0
    assert "X-Request-ID" in r.headers


def test_charge_then_replay_returns_same_result(client):
    _add_method(client)

    first = client.post(f"{BASE}/charge", json=_operation("api-op-1"), headers=HEADERS)
    second = client.post(f"{BASE}/charge", json=_operation("api-op-1"), headers=HEADERS)

    assert first.status_code == 200, first.text
    data = first.json()["data"]
    assert data["status"] == "success"
    assert data["amount_processed"] == "20.00"
    assert second.json()["data"]["gateway_reference_id"] == data["gateway_reference_id"]

    record = client.get(f"{BASE}/operations/api-op-1").json()["data"]
    assert record["state"] == "completed"
    assert record["result"]["gateway_reference_id"] == data["gateway_reference_id"]


def test_reused_operation_id_with_new_parameters_is_rejected(client):
    _add_method(client)
    client.post(f"{BASE}/charge", json=_operation("api-op-2"), headers=HEADERS)

    r = client.post(f"{BASE}/charge", json=_operation("api-op-2", amount="21.00"), headers=HEADERS)

    assert r.status_code == 422
    assert r.json()["error"]["field"] == "operation_id"


def test_refund_larger_than_payment_is_declined(client):
    _add_method(client)
    client.post(f"{BASE}/charge", json=_operation("api-op-3", payment_id="pay-refund"), headers=HEADERS)

    r = client.post(
        f"{BASE}/refund",
        json=_operation("api-op-4", payment_id="pay-refund", amount="50.00"),
        headers=HEADERS,
    )

    assert r.status_code == 402
    body = r.json()
    assert body["data"] is None
    assert body["error"]["type"] == "BusinessDecline"
    refunds = client.get(f"{BASE}/accounts/acct-api/payments/pay-refund/refunds", headers=HEADERS,
                         params={"plugin_name": "__external_payment__"})
    assert refunds.json()["data"] == []


def test_missing_tenant_header(client):
    r = client.post(f"{BASE}/charge", json=_operation("api-op-5"))
    assert r.status_code == 422
    assert r.json()["error"]["field"] == "X-Tenant-ID"


def test_unknown_payment_method_is_not_found(client):
    r = client.post(
        f"{BASE}/charge",
        json=_operation("api-op-6", payment_method_id="pm-missing"),
        headers=HEADERS,
    )
    assert r.status_code == 404


def test_search_and_payment_info(client):
    _add_method(client)
    client.post(f"{BASE}/authorize", json=_operation("api-op-7", payment_id="pay-search"), headers=HEADERS)

    page = client.get(f"{BASE}/search", params={"search_key": "pay-search", "limit": 5}, headers=HEADERS).json()["data"]
    info = client.get(
        f"{BASE}/accounts/acct-api/payments/pay-search",
        params={"payment_method_id": "pm-api"},
        headers=HEADERS,
    ).json()["data"]

    assert page["total_count"] == 1
    assert page["has_more"] is False
    assert [e["operation_id"] for e in info] == ["api-op-7"]


def test_payment_method_lifecycle(client):
    _add_method(client, account_id="acct-pm", payment_method_id="pm-a")
    _add_method(client, account_id="acct-pm", payment_method_id="pm-b")

    client.put(f"{BASE}/accounts/acct-pm/payment-methods/pm-a/default", headers=HEADERS)
    methods = client.get(f"{BASE}/accounts/acct-pm/payment-methods", headers=HEADERS).json()["data"]
    assert {m["payment_method_id"]: m["is_default"] for m in methods} == {"pm-a": True, "pm-b": False}

    r = client.delete(f"{BASE}/accounts/acct-pm/payment-methods/pm-b", headers=HEADERS)
    assert r.status_code == 200
    detail = client.get(f"{BASE}/accounts/acct-pm/payment-methods/pm-b", headers=HEADERS)
    assert detail.status_code == 404


def test_hosted_page(client):
    r = client.post(
        f"{BASE}/accounts/acct-api/hosted-page",
        json={"fields": {"amount": "5.00", "currency": "eur", "custom_fields": {"cart": "c-1"}}},
        headers=HEADERS,
    )
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["form_method"] == "POST"
    assert data["form_fields"]["currency"] == "EUR"
    assert data["form_fields"]["cart"] == "c-1"


def test_notification_without_tenant_header(client):
    payload = {"notification_id": "n-api", "status": "PROCESSED", "operation_id": "unknown-op"}
    r = client.post(f"{BASE}/notifications/__external_payment__", content=json.dumps(payload))

    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "success"
    assert "raw_payload" not in data


def test_malformed_notification_is_rejected(client):
    r = client.post(f"{BASE}/notifications/__external_payment__", content=b"not json")
    assert r.status_code == 400


@pytest.mark.parametrize("field", [{"kind": "payout"}, {"amount": "ten"}])
def test_notification_with_bad_field_is_rejected(client, field):
    payload = {"status": "PROCESSED", "operation_id": "api-op-x", **field}
    r = client.post(f"{BASE}/notifications/__external_payment__", content=json.dumps(payload))

    assert r.status_code == 400
    assert r.json()["error"]["type"] == "PaymentSignatureError"


def test_unknown_plugin_notification(client):
    r = client.post(f"{BASE}/notifications/paypal", content=b"{}")
    assert r.status_code == 404


def test_purge_and_sweep(client):
    _add_method(client)
    client.post(f"{BASE}/charge", json=_operation("api-op-8", payment_id="pay-purge"), headers=HEADERS)

    sweep = client.post(f"{BASE}/operations/reconcile", params={"min_age_seconds": 0}, headers=HEADERS)
    assert sweep.status_code == 200
    assert sweep.json()["data"]["still_in_flight"] == []

    assert client.delete(f"{BASE}/operations/api-op-8").status_code == 200
    assert client.get(f"{BASE}/operations/api-op-8").status_code == 404
