from __future__ import annotations

import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from quotagate.apps.api.deps import get_gate, get_relay
from quotagate.apps.api.main import create_app
from quotagate.core.config import Settings, get_settings
from quotagate.persistence.db import SessionLocal
from quotagate.services.quota import QuotaGate
from quotagate.services.relay import ChatRelay


TOKEN_HEADERS = {"X-Quotagate-Token": "test-shared-token"}


def _app(relay_handler=None):
    app = create_app()
    if relay_handler is not None:
        settings = Settings(relay_url="http://relay.test/post-assist")
        relay = ChatRelay(settings=settings, transport=httpx.MockTransport(relay_handler))
        app.dependency_overrides[get_relay] = lambda: relay
    return app


def _ok_relay(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"reply": "ok", "usage": {"total_tokens": 11}})


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_public_and_enveloped() -> None:
    async with _client(_app()) as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["data"] == {"status": "ok"}
    assert payload["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"] == payload["meta"]["request_id"]


@pytest.mark.asyncio
async def test_chat_requires_shared_token() -> None:
    async with _client(_app(_ok_relay)) as client:
        missing = await client.post("/v1/chat", json={"message": "hi"})
        wrong = await client.post("/v1/chat", json={"message": "hi"}, headers={"X-Quotagate-Token": "nope"})
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_chat_without_message_is_rejected() -> None:
    async with _client(_app(_ok_relay)) as client:
        response = await client.post("/v1/chat", json={"message": "   "}, headers=TOKEN_HEADERS)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_MESSAGE"


@pytest.mark.asyncio
async def test_anonymous_chat_is_limited_to_five_per_day() -> None:
    async with _client(_app(_ok_relay)) as client:
        for expected_used in range(1, 6):
            response = await client.post("/v1/chat", json={"message": "hello"}, headers=TOKEN_HEADERS)
            assert response.status_code == 200
            assert response.json()["data"]["reply"] == "ok"
            assert response.headers["X-Quota-Used"] == str(expected_used)

        rejected = await client.post("/v1/chat", json={"message": "hello"}, headers=TOKEN_HEADERS)
        usage = await client.get("/v1/quota/usage", headers=TOKEN_HEADERS)

    assert rejected.status_code == 402
    error = rejected.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"]["limit"] == 5
    assert error["details"]["tier"] == "free"
    assert rejected.headers["X-Quota-Remaining"] == "0"

    data = usage.json()["data"]
    assert data["principal_id"].startswith("anon:")
    assert data["counts"]["chat"] == 5
    assert data["tokens_consumed"] == 55
    assert data["limits"]["chat"] == 5


class _UnrecordedGate(QuotaGate):
    async def record_usage(self, context, action_kind, tokens_used=0, *, principal_id=None) -> bool:
        return False


@pytest.mark.asyncio
async def test_failed_charge_leaves_quota_headers_at_pre_request_values() -> None:
    app = _app(_ok_relay)
    gate = _UnrecordedGate(session_factory=SessionLocal)
    app.dependency_overrides[get_gate] = lambda: gate
    async with _client(app) as client:
        response = await client.post("/v1/chat", json={"message": "hello"}, headers=TOKEN_HEADERS)
    assert response.status_code == 200
    assert response.headers["X-Quota-Used"] == "0"
    assert response.headers["X-Quota-Remaining"] == "5"


@pytest.mark.asyncio
async def test_relay_failure_is_not_charged() -> None:
    def failing_relay(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="upstream down")

    headers = {**TOKEN_HEADERS, "X-User-Id": "u-relay"}
    async with _client(_app(failing_relay)) as client:
        response = await client.post("/v1/chat", json={"message": "hello"}, headers=headers)
        usage = await client.get("/v1/quota/usage", headers=headers)

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "RELAY_FAILED"
    assert usage.json()["data"]["counts"]["chat"] == 0


@pytest.mark.asyncio
async def test_relay_client_error_passes_through_uncharged() -> None:
    def rejecting_relay(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "missing_message"})

    headers = {**TOKEN_HEADERS, "X-User-Id": "u-400"}
    async with _client(_app(rejecting_relay)) as client:
        response = await client.post("/v1/chat", json={"message": "hello"}, headers=headers)
        usage = await client.get("/v1/quota/usage", headers=headers)

    assert response.status_code == 400
    assert response.json() == {"error": "missing_message"}
    assert usage.json()["data"]["counts"]["chat"] == 0


@pytest.mark.asyncio
async def test_web_enabled_chat_meters_web_search() -> None:
    seen: list[dict] = []

    def relay(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"reply": "searched"})

    headers = {**TOKEN_HEADERS, "X-User-Id": "u-web"}
    body = {"message": "news?", "web": {"enabled": True, "query": "news"}, "lang": "fr"}
    async with _client(_app(relay)) as client:
        response = await client.post("/v1/chat", json=body, headers=headers)
        usage = await client.get("/v1/quota/usage", headers=headers)

    assert response.status_code == 200
    assert response.headers["X-Quota-Action"] == "web_search"
    # Unknown fields reach the relay untouched.
    assert seen[0]["lang"] == "fr"
    counts = usage.json()["data"]["counts"]
    assert counts == {"chat": 0, "web_search": 1}


@pytest.mark.asyncio
async def test_oversized_message_is_rejected_with_413() -> None:
    async with _client(_app(_ok_relay)) as client:
        response = await client.post("/v1/chat", json={"message": "x" * 2001}, headers=TOKEN_HEADERS)
    assert response.status_code == 413
    assert response.json()["error"]["code"] == "REQUEST_TOO_LARGE"


@pytest.mark.asyncio
async def test_quota_check_then_confirm_usage() -> None:
    headers = {**TOKEN_HEADERS, "X-User-Id": "u-check"}
    async with _client(_app()) as client:
        check = await client.post("/v1/quota/check", json={"action": "chat", "request_size": 12}, headers=headers)
        principal_id = check.json()["data"]["principal_id"]
        record = await client.post(
            "/v1/quota/usage",
            json={"action": "chat", "tokens_used": 30, "principal_id": principal_id},
            headers=headers,
        )
        usage = await client.get("/v1/quota/usage", headers=headers)

    assert check.status_code == 200
    assert check.json()["data"] == {
        "allowed": True,
        "principal_id": "user:u-check",
        "action": "chat",
        "tier": "free",
        "limit": 5,
        "used": 0,
        "remaining": 5,
        "degraded": False,
    }
    assert check.headers["X-Quota-Limit"] == "5"
    assert record.json()["data"]["recorded"] is True
    assert usage.json()["data"]["counts"]["chat"] == 1
    assert usage.json()["data"]["tokens_consumed"] == 30


@pytest.mark.asyncio
async def test_webhook_upgrade_flows_through_to_quota() -> None:
    event = {
        "id": "evt_checkout",
        "type": "checkout.session.completed",
        "data": {"object": {"customer": "cus_1", "client_reference_id": "user:buyer"}},
    }
    headers = {**TOKEN_HEADERS, "X-User-Id": "buyer"}
    async with _client(_app()) as client:
        webhook = await client.post("/v1/billing/webhook", content=json.dumps(event))
        check = await client.post("/v1/quota/check", json={"action": "chat"}, headers=headers)

    assert webhook.status_code == 200
    assert webhook.json()["data"]["outcome"] == "applied"
    assert check.json()["data"]["tier"] == "premium"
    assert check.json()["data"]["limit"] == 200


@pytest.mark.asyncio
async def test_webhook_for_unknown_customer_is_noop() -> None:
    event = {
        "id": "evt_deleted",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_x", "customer": "cus_unknown", "status": "canceled"}},
    }
    async with _client(_app()) as client:
        response = await client.post("/v1/billing/webhook", content=json.dumps(event))
    assert response.status_code == 200
    assert response.json()["data"]["outcome"] == "noop"


@pytest.mark.asyncio
async def test_webhook_signature_is_enforced_when_secret_configured(monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    get_settings.cache_clear()
    async with _client(_app()) as client:
        response = await client.post(
            "/v1/billing/webhook",
            content=b'{"id": "evt_1", "type": "customer.subscription.deleted"}',
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        b'{"type": "customer.subscription.deleted", "data": "oops"}',
        b'{"type": "customer.subscription.deleted", "data": [1, 2]}',
        b"\xff\xfe{}",
    ],
)
async def test_malformed_webhook_body_returns_400(body: bytes) -> None:
    async with _client(_app()) as client:
        response = await client.post("/v1/billing/webhook", content=body)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_PAYLOAD_INVALID"


@pytest.mark.asyncio
async def test_non_utf8_webhook_body_fails_signature_check(monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    get_settings.cache_clear()
    async with _client(_app()) as client:
        response = await client.post(
            "/v1/billing/webhook",
            content=b"\xff\xfe{}",
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"


@pytest.mark.asyncio
async def test_billing_link_conflict_returns_409() -> None:
    async with _client(_app()) as client:
        first = await client.post(
            "/v1/billing/link",
            json={"principal_id": "user:a", "customer_ref": "cus_dup"},
            headers=TOKEN_HEADERS,
        )
        second = await client.post(
            "/v1/billing/link",
            json={"principal_id": "user:b", "customer_ref": "cus_dup"},
            headers=TOKEN_HEADERS,
        )
    assert first.status_code == 200
    assert first.json()["data"]["customer_ref"] == "cus_dup"
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "CUSTOMER_REF_CONFLICT"


@pytest.mark.asyncio
async def test_admin_policies_and_principal_lookup() -> None:
    async with _client(_app()) as client:
        await client.post(
            "/v1/billing/link",
            json={"principal_id": "user:admin-view", "customer_ref": "cus_view"},
            headers=TOKEN_HEADERS,
        )
        policies = await client.get("/v1/admin/policies", headers=TOKEN_HEADERS)
        principal = await client.get(
            "/v1/admin/principals",
            params={"customer_ref": "cus_view"},
            headers=TOKEN_HEADERS,
        )
        missing = await client.get(
            "/v1/admin/principals",
            params={"principal_id": "user:nobody"},
            headers=TOKEN_HEADERS,
        )

    tiers = {item["tier"]: item for item in policies.json()["data"]}
    assert tiers["free"]["actions_per_day"] == {"chat": 5, "web_search": 2}
    assert tiers["premium"]["max_request_size_chars"] == 8000
    assert principal.json()["data"]["principal_id"] == "user:admin-view"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_ops_metrics_report_admission_counters() -> None:
    async with _client(_app(_ok_relay)) as client:
        await client.post("/v1/chat", json={"message": "hello"}, headers=TOKEN_HEADERS)
        metrics = await client.get("/v1/ops/metrics", headers=TOKEN_HEADERS)

    data = metrics.json()["data"]
    assert data["counters"]["quota.admitted"] == 1
    assert data["counters"]["quota.recorded"] == 1
    assert "chat.relay" in data["external"]
    assert data["request_latency_p95_ms"] is not None


@pytest.mark.asyncio
async def test_store_outage_returns_503_envelopes(broken_session_factory) -> None:
    broken = QuotaGate(
        session_factory=broken_session_factory,
        settings=Settings(policy_cache_ttl_s=0),
    )
    app = _app(_ok_relay)
    app.dependency_overrides[get_gate] = lambda: broken
    headers = {**TOKEN_HEADERS, "X-User-Id": "u-outage"}
    async with _client(app) as client:
        chat = await client.post("/v1/chat", json={"message": "hello"}, headers=headers)
        usage = await client.get("/v1/quota/usage", headers=headers)

    assert chat.status_code == 503
    assert chat.json()["error"]["code"] == "STORE_UNAVAILABLE"
    assert usage.status_code == 503
    assert usage.json()["error"]["code"] == "STORE_UNAVAILABLE"
