"""Push notification channels.

:class:`FCMPushChannel` delivers through the Firebase Cloud Messaging
HTTP v1 API. Retrying transient failures (5xx, 429, connection errors)
is the transport's job and is done here with tenacity; callers get a
single :class:`DeliveryState` per token and never an exception.

:class:`MockPushChannel` logs and records sends for demo mode and tests.

Both channels build the same human-shareable fallback link: a WhatsApp
share URL carrying the incident page, which a guardian or the owner can
open without waiting on any server round trip.
"""

from __future__ import annotations

import asyncio
from typing import Any, Final, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from nari_suraksha.models import DeliveryState

logger = structlog.get_logger(__name__)

_FCM_SCOPE: Final[str] = "https://www.googleapis.com/auth/firebase.messaging"
_FCM_SEND_URL: Final[str] = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

_FALLBACK_TEMPLATE: Final[str] = (
    "\U0001f6a8 EMERGENCY ALERT \U0001f6a8\n\n"
    "Someone needs immediate assistance. View live location:\n{url}"
)


class TransientPushError(Exception):
    """Retryable FCM failure (server error, throttling, network)."""


class UnregisteredTokenError(Exception):
    """FCM reports the registration token as invalid or unregistered."""


def build_whatsapp_fallback_link(site_url: str, incident_id: str) -> str:
    """Return a ``wa.me`` share link pointing at the incident page."""
    incident_url = f"{site_url.rstrip('/')}/incident/{incident_id}"
    return "https://wa.me/?text=" + quote(_FALLBACK_TEMPLATE.format(url=incident_url), safe="")


# ---------------------------------------------------------------------------
# Channel protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class NotificationChannel(Protocol):
    async def send(
        self,
        recipient_token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> DeliveryState: ...

    def build_fallback_link(self, incident_id: str) -> str: ...


# ---------------------------------------------------------------------------
# Firebase Cloud Messaging
# ---------------------------------------------------------------------------


class FCMPushChannel:
    """Token-addressed push over FCM HTTP v1.

    Parameters
    ----------
    project_id:
        Firebase project that owns the registration tokens.
    credentials_path:
        Service-account JSON used to mint OAuth access tokens.
    site_url:
        Public origin of the web client, used for links in the payload.
    timeout_seconds:
        Per-request HTTP timeout.
    """

    __slots__ = ("_client", "_credentials", "_project_id", "_site_url", "_token_lock")

    def __init__(
        self,
        project_id: str,
        *,
        credentials_path: str,
        site_url: str,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        from google.oauth2 import service_account

        if not project_id:
            raise ValueError("FCM project id is required for live push delivery.")

        self._project_id = project_id
        self._site_url = site_url
        self._credentials = service_account.Credentials.from_service_account_file(
            credentials_path,
            scopes=[_FCM_SCOPE],
        )
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._token_lock = asyncio.Lock()

    def build_fallback_link(self, incident_id: str) -> str:
        return build_whatsapp_fallback_link(self._site_url, incident_id)

    async def _access_token(self) -> str:
        from google.auth.transport.requests import Request as GoogleAuthRequest

        async with self._token_lock:
            if not self._credentials.valid:
                # google-auth refresh is blocking I/O
                await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
            return self._credentials.token

    def _message(self, token: str, title: str, body: str, data: dict[str, str]) -> dict[str, Any]:
        link = data.get("link", self._site_url)
        return {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "data": data,
                "android": {"priority": "high"},
                "webpush": {
                    "headers": {"Urgency": "high"},
                    "fcm_options": {"link": link},
                },
            },
        }

    @retry(
        retry=retry_if_exception_type(TransientPushError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        access_token = await self._access_token()
        try:
            response = await self._client.post(
                _FCM_SEND_URL.format(project_id=self._project_id),
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TransportError as exc:
            raise TransientPushError(str(exc)) from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientPushError(f"FCM returned {response.status_code}")
        if response.status_code == 404:
            raise UnregisteredTokenError("registration token is not registered")
        response.raise_for_status()
        return response.json()

    async def send(
        self,
        recipient_token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> DeliveryState:
        try:
            result = await self._post(self._message(recipient_token, title, body, data))
        except UnregisteredTokenError:
            logger.warning("push.fcm_token_unregistered", token_suffix=recipient_token[-8:])
            return DeliveryState.FAILED
        except Exception as exc:
            logger.warning("push.fcm_send_failed", token_suffix=recipient_token[-8:], error=str(exc))
            return DeliveryState.FAILED

        logger.info("push.fcm_sent", message_name=result.get("name", ""))
        return DeliveryState.DELIVERED

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Mock channel (demo mode and tests)
# ---------------------------------------------------------------------------


class MockPushChannel:
    """Records every send instead of delivering it.

    Tokens listed in *failing_tokens* report ``failed``; tokens in
    *raising_tokens* raise, to exercise fan-out isolation.
    """

    __slots__ = ("_failing", "_raising", "_site_url", "sent")

    def __init__(
        self,
        *,
        site_url: str = "http://localhost:8000",
        failing_tokens: set[str] | None = None,
        raising_tokens: set[str] | None = None,
    ) -> None:
        self._site_url = site_url
        self._failing = failing_tokens or set()
        self._raising = raising_tokens or set()
        self.sent: list[dict[str, Any]] = []

    def build_fallback_link(self, incident_id: str) -> str:
        return build_whatsapp_fallback_link(self._site_url, incident_id)

    async def send(
        self,
        recipient_token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> DeliveryState:
        if recipient_token in self._raising:
            raise ConnectionError(f"mock transport error for {recipient_token}")
        self.sent.append({"token": recipient_token, "title": title, "body": body, "data": data})
        if recipient_token in self._failing:
            logger.info("mock_push.failed", token=recipient_token)
            return DeliveryState.FAILED
        logger.info("mock_push.sent", token=recipient_token, title=title, body_preview=body[:80])
        return DeliveryState.MOCK
