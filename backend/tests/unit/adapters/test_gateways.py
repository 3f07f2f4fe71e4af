"""Tests for gateway adapters and the template renderer.

HTTP gateways run against ``httpx.MockTransport`` so no request leaves the
process.
"""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import orjson
import pytest

from herald.adapters.outbound.gateways import (
    FcmGateway,
    InAppGateway,
    MailgunGateway,
    SendGridGateway,
    SimulatedGateway,
    TwilioGateway,
    VonageGateway,
)
from herald.adapters.outbound.templates import DictTemplateRenderer, Template
from herald.domain.entities import Notification
from herald.domain.enums import Channel
from herald.domain.exceptions import TemplateRenderError
from herald.ports.outbound import GatewayResult


def _client(handler, requests: list[httpx.Request] | None = None) -> httpx.AsyncClient:
    def record(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(record), base_url="https://api.test")


def _email() -> Notification:
    return Notification(
        tenant_id="acme",
        user_id="u-1",
        service_origin="billing",
        channel=Channel.EMAIL,
        recipient="ada@example.com",
        subject="Your invoice",
        body="Total: 10 EUR",
    )


def _push() -> Notification:
    return Notification(
        tenant_id="acme",
        user_id="u-1",
        service_origin="orders",
        channel=Channel.PUSH,
        recipient="device-token-1",
        subject="Shipped",
        body="Your order is on its way",
        metadata={"order_id": 42},
    )


# ═══════════════════════════════════════════════════════════════
#  HTTP gateways
# ═══════════════════════════════════════════════════════════════
class TestTwilioGateway:
    @pytest.mark.asyncio
    async def test_posts_form_and_returns_sid(self, sample_notification) -> None:
        requests: list[httpx.Request] = []
        client = _client(lambda r: httpx.Response(201, json={"sid": "SM123"}), requests)
        gateway = TwilioGateway(
            "AC1", "token", "+15550009999", status_callback_url="https://h/cb", client=client
        )

        result = await gateway.send(sample_notification)

        assert result == GatewayResult.accepted("SM123")
        [request] = requests
        assert request.url.path == "/Accounts/AC1/Messages.json"
        form = parse_qs(request.content.decode())
        assert form["To"] == ["+15550001111"]
        assert form["StatusCallback"] == ["https://h/cb"]

    @pytest.mark.asyncio
    async def test_error_response_is_rejected(self, sample_notification) -> None:
        client = _client(lambda r: httpx.Response(400, json={"message": "invalid To"}))
        result = await TwilioGateway("AC1", "token", "+1", client=client).send(sample_notification)
        assert not result.success
        assert result.error_code == "HTTP_400"
        assert "invalid To" in result.error_message

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self, sample_notification) -> None:
        calls = {"n": 0}

        def flaky(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(201, json={"sid": "SM9"})

        result = await TwilioGateway("AC1", "token", "+1", client=_client(flaky)).send(sample_notification)
        assert result.provider_message_id == "SM9"
        assert calls["n"] == 2


class TestVonageGateway:
    @pytest.mark.asyncio
    async def test_returns_message_uuid(self, sample_notification) -> None:
        requests: list[httpx.Request] = []
        client = _client(lambda r: httpx.Response(202, json={"message_uuid": "uuid-1"}), requests)
        result = await VonageGateway("key", "secret", "Herald", client=client).send(sample_notification)

        assert result.provider_message_id == "uuid-1"
        payload = orjson.loads(requests[0].content)
        assert requests[0].url.path == "/v1/messages"
        assert payload["to"] == "15550001111"
        assert payload["client_ref"] == sample_notification.id


class TestSendGridGateway:
    @pytest.mark.asyncio
    async def test_message_id_comes_from_header(self) -> None:
        requests: list[httpx.Request] = []
        client = _client(lambda r: httpx.Response(202, headers={"X-Message-Id": "sg-1"}), requests)
        notification = _email()
        result = await SendGridGateway("key", "noreply@example.com", client=client).send(notification)

        assert result.provider_message_id == "sg-1"
        payload = orjson.loads(requests[0].content)
        assert payload["subject"] == "Your invoice"
        assert payload["personalizations"][0]["custom_args"]["notification_id"] == notification.id

    @pytest.mark.asyncio
    async def test_server_error_is_rejected(self) -> None:
        client = _client(lambda r: httpx.Response(503, text="try later"))
        result = await SendGridGateway("key", "noreply@example.com", client=client).send(_email())
        assert result.error_code == "HTTP_503"


class TestMailgunGateway:
    @pytest.mark.asyncio
    async def test_strips_angle_brackets(self) -> None:
        requests: list[httpx.Request] = []
        client = _client(lambda r: httpx.Response(200, json={"id": "<2026.1@mg.example.com>"}), requests)
        result = await MailgunGateway("key", "mg.example.com", "noreply@example.com", client=client).send(_email())

        assert result.provider_message_id == "2026.1@mg.example.com"
        assert requests[0].url.path == "/mg.example.com/messages"


class TestFcmGateway:
    @pytest.mark.asyncio
    async def test_returns_last_name_segment(self) -> None:
        requests: list[httpx.Request] = []
        client = _client(lambda r: httpx.Response(200, json={"name": "projects/p1/messages/0:99"}), requests)
        result = await FcmGateway("p1", "token", client=client).send(_push())

        assert result.provider_message_id == "0:99"
        assert requests[0].url.path == "/projects/p1/messages:send"
        data = orjson.loads(requests[0].content)["message"]["data"]
        assert data["order_id"] == "42"


# ═══════════════════════════════════════════════════════════════
#  In-process gateways
# ═══════════════════════════════════════════════════════════════
class TestSimulatedGateway:
    @pytest.mark.asyncio
    async def test_script_then_accept(self, sample_notification) -> None:
        gateway = SimulatedGateway("twilio", script=[GatewayResult.rejected("HTTP_500")])
        assert (await gateway.send(sample_notification)).error_code == "HTTP_500"
        accepted = await gateway.send(sample_notification)
        assert accepted.success
        assert accepted.provider_message_id.startswith("SIM-TWILIO-")
        assert gateway.sent == [sample_notification.id] * 2

    @pytest.mark.asyncio
    async def test_scripted_exception_is_raised(self, sample_notification) -> None:
        gateway = SimulatedGateway("twilio", script=[TimeoutError("slow")])
        with pytest.raises(TimeoutError):
            await gateway.send(sample_notification)

    @pytest.mark.asyncio
    async def test_unhealthy_rejects(self, sample_notification) -> None:
        gateway = SimulatedGateway("twilio")
        gateway.healthy = False
        assert (await gateway.send(sample_notification)).error_code == "SIMULATED_FAILURE"


class TestInAppGateway:
    @pytest.mark.asyncio
    async def test_publishes_on_user_channel(self, store) -> None:
        notification = Notification(
            tenant_id="acme",
            user_id="u-7",
            service_origin="social",
            channel=Channel.IN_APP,
            recipient="u-7",
            body="New follower",
        )
        result = await InAppGateway(store).send(notification)

        [(channel, message)] = store.published
        assert channel == "inapp:acme:u-7"
        payload = orjson.loads(message)
        assert payload["id"] == result.provider_message_id
        assert payload["body"] == "New follower"


# ═══════════════════════════════════════════════════════════════
#  Templates
# ═══════════════════════════════════════════════════════════════
class TestTemplates:
    @pytest.fixture
    def renderer(self) -> DictTemplateRenderer:
        renderer = DictTemplateRenderer()
        renderer.register("otp", Template("Your code is {code}", "Sign in"))
        renderer.register("otp", Template("Dein Code ist {code}", "Anmeldung"), locale="de")
        return renderer

    @pytest.mark.asyncio
    async def test_renders_locale(self, renderer) -> None:
        assert await renderer.render("otp", {"code": "42"}, "de") == ("Anmeldung", "Dein Code ist 42")

    @pytest.mark.asyncio
    async def test_falls_back_to_default_locale(self, renderer) -> None:
        assert await renderer.render("otp", {"code": "42"}, "fr") == ("Sign in", "Your code is 42")

    @pytest.mark.asyncio
    async def test_missing_variable_fails(self, renderer) -> None:
        with pytest.raises(TemplateRenderError):
            await renderer.render("otp", {}, "en")

    @pytest.mark.asyncio
    async def test_unknown_template_fails(self, renderer) -> None:
        with pytest.raises(TemplateRenderError):
            await renderer.render("welcome", {}, "en")
