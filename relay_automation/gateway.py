# SPDX-License-Identifier: MPL-2.0
"""
HTTP messaging gateway transport.

Talks to a WhatsApp session gateway exposing a small REST API:

- POST /api/sessions/start, POST /api/sessions/stop
- GET  /api/sessions/{session}        -> {"status": "WORKING", ...}
- GET  /api/{session}/auth/qr         -> {"value": "<qr data>"}
- POST /api/sendText                  -> send a text message

The gateway reports session status only when asked, so the transport polls
it and turns status changes into lifecycle events.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from relay_automation.transport import ConnectionState, Transport, TransportEventKind

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Raised when the gateway rejects a request or cannot be reached."""
    pass


GATEWAY_STATES: Dict[str, ConnectionState] = {
    "STARTING": ConnectionState.CONNECTING,
    "SCAN_QR_CODE": ConnectionState.CONNECTING,
    "WORKING": ConnectionState.READY,
    "FAILED": ConnectionState.AUTH_FAILED,
    "STOPPED": ConnectionState.DISCONNECTED,
}


def format_chat_id(recipient: str) -> str:
    """Return the gateway chat id of a phone number (``<number>@c.us``)."""
    recipient = recipient.strip()
    if "@" in recipient:
        return recipient
    return f"{recipient.lstrip('+')}@c.us"


class GatewayClient:
    """
    Blocking REST client for the messaging gateway.

    Attributes:
        base_url (str): Gateway URL
        session_name (str): Name of the gateway session to use
        timeout (int): Request timeout in seconds
    """

    def __init__(
        self,
        base_url: str,
        session_name: str = "default",
        api_key: Optional[str] = None,
        timeout: int = 30,
    ):
        """
        Initialize the gateway client.

        Args:
            base_url: Gateway URL (e.g. http://localhost:3000)
            session_name: Gateway session name (default: "default")
            api_key: Optional key sent in the X-Api-Key header
            timeout: Request timeout in seconds (default: 30)
        """
        if not base_url:
            raise ValueError("Gateway URL cannot be empty")

        self.base_url = base_url.rstrip("/")
        self.session_name = session_name
        self.timeout = timeout
        self._session = requests.Session()
        if api_key:
            self._session.headers.update({"X-Api-Key": api_key})

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        Make a request to the gateway.

        The raised GatewayError carries the gateway's own error text, which
        is what the dispatcher classifies.

        Raises:
            GatewayError: If the request fails
        """
        url = f"{self.base_url}{path}"

        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            body = response.text.strip()
            raise GatewayError(f"Gateway returned {response.status_code}: {body or e}")
        except requests.exceptions.Timeout as e:
            raise GatewayError(f"Network timeout talking to gateway: {e}")
        except requests.exceptions.ConnectionError as e:
            raise GatewayError(f"Network error talking to gateway: {e}")
        except requests.exceptions.RequestException as e:
            raise GatewayError(f"Gateway request failed: {e}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def start_session(self) -> None:
        self._request("POST", "/api/sessions/start", json={"name": self.session_name})

    def stop_session(self) -> None:
        self._request("POST", "/api/sessions/stop", json={"name": self.session_name})

    def get_session_status(self) -> str:
        """Return the raw gateway status string (e.g. "WORKING")."""
        data = self._request("GET", f"/api/sessions/{self.session_name}")
        if not isinstance(data, dict) or "status" not in data:
            raise GatewayError(f"Unexpected session response: {data!r}")
        return str(data["status"])

    def get_qr(self) -> str:
        """Return the pending QR challenge value."""
        data = self._request("GET", f"/api/{self.session_name}/auth/qr", params={"format": "raw"})
        if isinstance(data, dict):
            return str(data.get("value", ""))
        return str(data or "")

    def send_text(self, chat_id: str, text: str) -> Any:
        return self._request(
            "POST",
            "/api/sendText",
            json={"session": self.session_name, "chatId": chat_id, "text": text},
        )

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()

    def __enter__(self) -> "GatewayClient":
        """Context manager entry."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.close()


class GatewayTransport(Transport):
    """
    Transport backed by a GatewayClient.

    Args:
        client: Gateway client owned by this transport (closed on destroy)
        poll_interval: Seconds between session status polls
    """

    def __init__(self, client: GatewayClient, poll_interval: float = 5.0) -> None:
        super().__init__()
        self.client = client
        self.poll_interval = poll_interval
        self._last_status: Optional[str] = None
        self._poll_task: Optional["asyncio.Task[None]"] = None

    async def initialize(self) -> None:
        await asyncio.to_thread(self.client.start_session)
        self._poll_task = asyncio.create_task(self._poll())

    async def get_status(self) -> ConnectionState:
        raw = await asyncio.to_thread(self.client.get_session_status)
        state = GATEWAY_STATES.get(raw)
        if state is None:
            logger.warning(f"Unknown gateway status {raw!r}")
            return ConnectionState.DISCONNECTED
        return state

    async def send(self, recipient: str, body: str) -> None:
        await asyncio.to_thread(self.client.send_text, format_chat_id(recipient), body)

    async def destroy(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        try:
            await asyncio.to_thread(self.client.stop_session)
        except GatewayError as e:
            logger.debug(f"Stopping gateway session failed: {e}")
        self.client.close()

    async def _poll(self) -> None:
        while True:
            try:
                raw = await asyncio.to_thread(self.client.get_session_status)
                await self.observe_status(raw)
            except GatewayError as e:
                logger.debug(f"Gateway status poll failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error polling gateway: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def observe_status(self, raw: str) -> None:
        """Emit the lifecycle events implied by a change of gateway status."""
        if raw == self._last_status:
            return
        previous = self._last_status
        self._last_status = raw
        logger.debug(f"Gateway status {previous} -> {raw}")

        if raw == "SCAN_QR_CODE":
            try:
                qr = await asyncio.to_thread(self.client.get_qr)
            except GatewayError as e:
                logger.warning(f"Failed to fetch QR challenge: {e}")
                return
            self.emit(TransportEventKind.QR_CHALLENGE, qr)
        elif raw == "WORKING":
            self.emit(TransportEventKind.AUTHENTICATED)
            self.emit(TransportEventKind.READY)
        elif raw == "FAILED":
            self.emit(TransportEventKind.AUTH_FAILURE, "gateway session failed")
        elif raw == "STOPPED" and previous is not None:
            self.emit(TransportEventKind.DISCONNECTED, f"gateway session stopped (was {previous})")
