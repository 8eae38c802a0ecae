"""Tests for push channels and the WhatsApp fallback link."""

from __future__ import annotations

from unittest.mock import MagicMock, patch
from urllib.parse import unquote

import httpx
import pytest

from nari_suraksha.models import DeliveryState
from nari_suraksha.services.push import (
    FCMPushChannel,
    MockPushChannel,
    NotificationChannel,
    build_whatsapp_fallback_link,
)


class TestFallbackLink:
    def test_points_at_incident_page(self) -> None:
        link = build_whatsapp_fallback_link("https://suraksha.example/", "inc-42")
        assert link.startswith("https://wa.me/?text=")
        text = unquote(link.removeprefix("https://wa.me/?text="))
        assert "EMERGENCY ALERT" in text
        assert text.endswith("https://suraksha.example/incident/inc-42")

    def test_message_is_fully_encoded(self) -> None:
        link = build_whatsapp_fallback_link("https://suraksha.example", "inc-42")
        query = link.removeprefix("https://wa.me/?text=")
        assert " " not in query and "\n" not in query and "/" not in query


class TestMockPushChannel:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(MockPushChannel(), NotificationChannel)

    async def test_records_sends(self) -> None:
        channel = MockPushChannel()
        state = await channel.send("tok", "title", "body", {"incidentId": "i1"})
        assert state is DeliveryState.MOCK
        assert channel.sent == [{"token": "tok", "title": "title", "body": "body", "data": {"incidentId": "i1"}}]

    async def test_failing_token(self) -> None:
        channel = MockPushChannel(failing_tokens={"bad"})
        assert await channel.send("bad", "t", "b", {}) is DeliveryState.FAILED

    async def test_raising_token(self) -> None:
        channel = MockPushChannel(raising_tokens={"boom"})
        with pytest.raises(ConnectionError):
            await channel.send("boom", "t", "b", {})


# -----------------------------------------------------------------------
# FCM over a mocked transport
# -----------------------------------------------------------------------


def _fcm_channel(handler) -> FCMPushChannel:
    credentials = MagicMock(valid=True, token="access-token")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with patch(
        "google.oauth2.service_account.Credentials.from_service_account_file",
        return_value=credentials,
    ):
        return FCMPushChannel(
            "demo-project",
            credentials_path="/nonexistent/sa.json",
            site_url="https://suraksha.example",
            client=client,
        )


class TestFCMPushChannel:
    def test_requires_project_id(self) -> None:
        with pytest.raises(ValueError):
            FCMPushChannel("", credentials_path="x.json", site_url="https://suraksha.example")

    async def test_successful_send(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"name": "projects/demo-project/messages/1"})

        channel = _fcm_channel(handler)
        state = await channel.send("device-token", "Alert", "Body", {"link": "/incident/i1"})

        assert state is DeliveryState.DELIVERED
        assert requests[0].url.path == "/v1/projects/demo-project/messages:send"
        assert requests[0].headers["Authorization"] == "Bearer access-token"
        await channel.close()

    async def test_unregistered_token_fails_without_retry(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})

        channel = _fcm_channel(handler)
        assert await channel.send("stale-token", "t", "b", {}) is DeliveryState.FAILED
        assert calls == 1

    async def test_transient_errors_are_retried(self) -> None:
        responses = iter([httpx.Response(503), httpx.Response(200, json={"name": "ok"})])

        channel = _fcm_channel(lambda request: next(responses))
        assert await channel.send("tok", "t", "b", {}) is DeliveryState.DELIVERED

    async def test_exhausted_retries_return_failed(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500)

        channel = _fcm_channel(handler)
        assert await channel.send("tok", "t", "b", {}) is DeliveryState.FAILED
        assert calls == 3
