"""Integration tests for the FastAPI app over an in-memory container.

Requests go through the full middleware stack, exception handlers and
dependency wiring; gateways are simulated.
"""

from __future__ import annotations

import random
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from herald.adapters.outbound.gateways import SimulatedGateway
from herald.config import get_settings
from herald.dependencies import build_container
from herald.domain.enums import Channel
from herald.main import create_app
from herald.shared.providers import ProviderConfig
from herald.shared.security import twilio_signature

CALLER = {"X-Tenant-ID": "acme", "X-Service-Origin": "auth"}
ADMIN = {"X-Admin-Key": "test-admin-key"}
PUBLIC_URL = "https://herald.example.com"


def _sms(body: str = "Your code is 123456", **extra) -> dict:
    return {"user_id": "u-1", "channel": "sms", "recipient": "+15550001111", "body": body, **extra}


@pytest.fixture
def twilio() -> SimulatedGateway:
    return SimulatedGateway("twilio")


@pytest.fixture
def client(twilio):
    settings = get_settings(
        worker_enabled=False,
        admin_api_key="test-admin-key",
        webhook_secrets={"twilio": "tw-token"},
        webhook_base_url=PUBLIC_URL,
        rate_limit_user_burst=3,
        budgets=[{"tenant_id": "acme", "monthly_cap_micros": 1_000_000}],
    )
    providers = {
        Channel.SMS: [
            (ProviderConfig("twilio", Channel.SMS, priority=10, cb_failure_threshold=3, confirms_delivery=True), twilio)
        ]
    }
    container = build_container(settings, providers=providers, rng=random.Random(3))
    with TestClient(create_app(settings, container)) as test_client:
        yield test_client


# ═══════════════════════════════════════════════════════════════
#  Health & metrics
# ═══════════════════════════════════════════════════════════════
class TestHealth:
    def test_root(self, client) -> None:
        assert client.get("/").json()["health"] == "/api/v1/health"

    def test_health(self, client) -> None:
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["services"]["store"] == "connected"
        assert data["services"]["database"] == "memory"
        assert data["services"]["worker"] == "stopped"

    def test_metrics(self, client) -> None:
        client.get("/api/v1/health")
        resp = client.get("/api/v1/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "http_requests_total" in resp.text

    def test_request_id_is_echoed(self, client) -> None:
        resp = client.get("/api/v1/health", headers={"X-Request-ID": "req-1"})
        assert resp.headers["X-Request-ID"] == "req-1"


# ═══════════════════════════════════════════════════════════════
#  Notifications
# ═══════════════════════════════════════════════════════════════
class TestQueueNotification:
    def test_queued_with_rate_limit_headers(self, client) -> None:
        resp = client.post("/api/v1/notifications", json=_sms(), headers=CALLER)
        assert resp.status_code == 202
        assert resp.json()["status"] == "queued"
        assert resp.headers["X-RateLimit-Scope"] == "user"
        assert resp.headers["X-RateLimit-Remaining"] == "2"

    def test_idempotent_replay_returns_200(self, client) -> None:
        first = client.post("/api/v1/notifications", json=_sms(idempotency_key="k-1"), headers=CALLER)
        second = client.post("/api/v1/notifications", json=_sms(idempotency_key="k-1"), headers=CALLER)
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["notification_id"] == first.json()["notification_id"]

    def test_rate_limited(self, client) -> None:
        for _ in range(3):
            assert client.post("/api/v1/notifications", json=_sms(), headers=CALLER).status_code == 202
        resp = client.post("/api/v1/notifications", json=_sms(), headers=CALLER)
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) >= 1
        assert resp.json()["code"] == "RATE_LIMITED"
        assert resp.json()["details"]["scope"] == "user"

    def test_caller_headers_required(self, client) -> None:
        resp = client.post("/api/v1/notifications", json=_sms())
        assert resp.status_code == 422

    def test_invalid_channel(self, client) -> None:
        resp = client.post("/api/v1/notifications", json=_sms(channel="fax"), headers=CALLER)
        assert resp.status_code == 422

    def test_missing_body_is_a_domain_validation_error(self, client) -> None:
        payload = _sms()
        del payload["body"]
        resp = client.post("/api/v1/notifications", json=payload, headers=CALLER)
        assert resp.status_code == 422
        assert resp.json()["code"] == "VALIDATION_ERROR"


class TestReadAndCancel:
    def test_get_is_tenant_scoped(self, client) -> None:
        nid = client.post("/api/v1/notifications", json=_sms(), headers=CALLER).json()["notification_id"]

        resp = client.get(f"/api/v1/notifications/{nid}", headers=CALLER)
        assert resp.status_code == 200
        assert resp.json()["status"] == "queued"

        other = {"X-Tenant-ID": "globex", "X-Service-Origin": "auth"}
        resp = client.get(f"/api/v1/notifications/{nid}", headers=other)
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOTIFICATION_NOT_FOUND"

    def test_cancel_then_cancel_again(self, client) -> None:
        nid = client.post("/api/v1/notifications", json=_sms(), headers=CALLER).json()["notification_id"]

        resp = client.post(f"/api/v1/notifications/{nid}/cancel", json={"reason": "opted out"}, headers=CALLER)
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        resp = client.post(f"/api/v1/notifications/{nid}/cancel", headers=CALLER)
        assert resp.status_code == 409


class TestSend:
    def test_synchronous_send(self, client) -> None:
        resp = client.post("/api/v1/notifications/send", json=_sms(), headers=CALLER)
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "sent"
        assert data["provider"] == "twilio"
        assert data["provider_message_id"].startswith("SIM-TWILIO-")

    def test_open_circuit_is_503(self, client, twilio) -> None:
        twilio.healthy = False
        for i in range(3):
            sent = client.post("/api/v1/notifications/send", json=_sms(user_id=f"u-{i}"), headers=CALLER)
            assert sent.json()["status"] == "failed"
        resp = client.post("/api/v1/notifications/send", json=_sms(user_id="u-9"), headers=CALLER)
        assert resp.status_code == 503
        assert "Retry-After" in resp.headers


class TestBatch:
    def test_partial_success_is_207(self, client) -> None:
        items = [_sms(), {"user_id": "u-2", "channel": "sms", "recipient": "+1555"}, _sms()]
        resp = client.post("/api/v1/notifications/batch", json={"items": items}, headers=CALLER)
        assert resp.status_code == 207
        data = resp.json()
        assert (data["succeeded"], data["failed"]) == (2, 1)
        assert data["results"][1]["error_code"] == "VALIDATION_ERROR"

    def test_empty_batch_rejected(self, client) -> None:
        resp = client.post("/api/v1/notifications/batch", json={"items": []}, headers=CALLER)
        assert resp.status_code == 422


class TestRateLimitStatus:
    def test_peek_does_not_consume(self, client) -> None:
        for _ in range(2):
            resp = client.get("/api/v1/rate-limits", params={"user_id": "u-1", "channel": "sms"}, headers=CALLER)
            assert resp.status_code == 200
            assert resp.json()["scope"] == "user"
            assert resp.json()["remaining"] == 3


# ═══════════════════════════════════════════════════════════════
#  Webhooks
# ═══════════════════════════════════════════════════════════════
class TestWebhooks:
    def _post(self, client, params: dict[str, str], token: str = "tw-token"):
        url = f"{PUBLIC_URL}/api/v1/webhooks/twilio"
        return client.post(
            "/api/v1/webhooks/twilio",
            content=urlencode(params),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Twilio-Signature": twilio_signature(token, url, params),
            },
        )

    def test_delivery_receipt_finalises(self, client) -> None:
        sent = client.post("/api/v1/notifications/send", json=_sms(), headers=CALLER).json()

        resp = self._post(client, {"MessageSid": sent["provider_message_id"], "MessageStatus": "delivered"})
        assert resp.status_code == 200
        assert resp.json() == {"accepted": 1}

        notification = client.get(f"/api/v1/notifications/{sent['notification_id']}", headers=CALLER).json()
        assert notification["status"] == "delivered"
        assert notification["attempts"][0]["delivery_status"] == "delivered"

    def test_receipt_for_unknown_message_is_acknowledged(self, client) -> None:
        resp = self._post(client, {"MessageSid": "SM-not-stored-yet", "MessageStatus": "delivered"})
        assert resp.status_code == 200
        assert resp.json() == {"accepted": 1}

    def test_bad_signature_is_401(self, client) -> None:
        resp = self._post(client, {"MessageSid": "SM1", "MessageStatus": "delivered"}, token="forged")
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_SIGNATURE"

    def test_unknown_family_is_422(self, client) -> None:
        assert client.post("/api/v1/webhooks/pigeon", content=b"{}").status_code == 422


# ═══════════════════════════════════════════════════════════════
#  Admin
# ═══════════════════════════════════════════════════════════════
class TestAdmin:
    def test_requires_admin_key(self, client) -> None:
        assert client.get("/api/v1/admin/providers").status_code == 403
        assert client.get("/api/v1/admin/providers", headers={"X-Admin-Key": "wrong"}).status_code == 403

    def test_provider_status(self, client) -> None:
        resp = client.get("/api/v1/admin/providers", headers=ADMIN)
        assert resp.status_code == 200
        [circuit] = resp.json()
        assert (circuit["channel"], circuit["provider"], circuit["state"]) == ("sms", "twilio", "closed")

    def test_reset_open_circuit_is_audited(self, client, twilio) -> None:
        twilio.healthy = False
        for _ in range(3):
            client.post("/api/v1/notifications/send", json=_sms(), headers=CALLER)
        assert client.get("/api/v1/admin/providers", headers=ADMIN).json()[0]["state"] == "open"

        resp = client.post(
            "/api/v1/admin/providers/sms/twilio/reset",
            json={"reason": "carrier confirmed recovery", "actor": "ops"},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        assert resp.json()["state"] == "closed"

        [record] = client.get("/api/v1/admin/audit/cb:sms:twilio", headers=ADMIN).json()
        assert record["action"] == "provider.circuit_reset"
        assert record["actor"] == "ops"

    def test_reset_unknown_provider_is_404(self, client) -> None:
        resp = client.post("/api/v1/admin/providers/sms/nobody/reset", json={"reason": "x"}, headers=ADMIN)
        assert resp.status_code == 404

    def test_admin_retry(self, client, twilio) -> None:
        twilio.healthy = False
        failed = client.post("/api/v1/notifications/send", json=_sms(), headers=CALLER).json()
        assert failed["status"] == "failed"

        resp = client.post(
            f"/api/v1/admin/notifications/{failed['notification_id']}/retry",
            json={"reason": "provider recovered", "actor": "ops"},
            headers=ADMIN,
        )
        assert resp.status_code == 202
        assert resp.json()["status"] == "retrying"

        trail = client.get(f"/api/v1/admin/audit/{failed['notification_id']}", headers=ADMIN).json()
        assert trail[0]["id"] == resp.json()["retry_attempt_id"]

    def test_budget_utilization(self, client) -> None:
        client.post("/api/v1/notifications/send", json=_sms(), headers=CALLER)
        resp = client.get("/api/v1/admin/budgets/acme", headers=ADMIN)
        assert resp.status_code == 200
        [scope] = resp.json()["scopes"]
        assert scope["scope_key"] == "acme"
        assert scope["spend_micros"] == 7_900
        assert scope["cap_micros"] == 1_000_000
