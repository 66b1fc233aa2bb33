from __future__ import annotations

import httpx

from shiftcall.core.config import Settings, get_settings
from shiftcall.core.errors import ChannelConfigError, ChannelSendError
from shiftcall.providers.channels.base import PortalReceipt


class HttpPortalChannel:
    # In-app inbox messages are owned by the portal service; we only post into it.
    def __init__(self, client: httpx.AsyncClient | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.channel_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def create_portal_message(self, contact_id: str, body: str) -> PortalReceipt:
        base_url = self._settings.portal_api_url
        if not base_url:
            raise ChannelConfigError("PORTAL_API_URL is required for portal messages")
        headers = {}
        if self._settings.portal_api_token:
            headers["Authorization"] = f"Bearer {self._settings.portal_api_token}"
        response = await self._get_client().post(
            f"{base_url.rstrip('/')}/messages",
            json={"contact_id": contact_id, "body": body, "type": "job_invitation"},
            headers=headers,
        )
        if response.status_code >= 400:
            raise ChannelSendError(f"Portal error: {response.status_code}")
        message_id = response.json().get("id")
        if not message_id:
            raise ChannelSendError("Portal response missing message id")
        return PortalReceipt(message_id=str(message_id))
