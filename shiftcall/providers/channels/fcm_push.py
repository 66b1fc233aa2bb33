from __future__ import annotations

import logging
from typing import Any

import httpx

from shiftcall.core.config import Settings, get_settings
from shiftcall.core.errors import ChannelConfigError, ChannelSendError
from shiftcall.providers.channels.base import PushPayload, PushReceipt


logger = logging.getLogger(__name__)

# Tokens FCM will never deliver to again; the contact store should drop them.
_DEAD_TOKEN_ERRORS = {"NotRegistered", "InvalidRegistration", "MismatchSenderId"}


class FcmPushChannel:
    def __init__(self, client: httpx.AsyncClient | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per adapter for connection pooling.
        timeout_s = self._settings.channel_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def send_push(self, device_token: str, payload: PushPayload) -> PushReceipt:
        server_key = self._settings.fcm_server_key
        if not server_key:
            raise ChannelConfigError("FCM_SERVER_KEY is required for push delivery")

        body: dict[str, Any] = {
            "to": device_token,
            "priority": "high",
            "notification": {"title": payload.title, "body": payload.body},
            "data": {
                **{key: str(value) for key, value in payload.data.items()},
                "notificationId": payload.notification_id,
                "actionType": "job_invitation",
            },
        }
        headers = {"Authorization": f"key={server_key}"}
        response = await self._get_client().post(self._settings.fcm_endpoint, json=body, headers=headers)

        if response.status_code in {401, 403}:
            raise ChannelConfigError("FCM auth error: check FCM_SERVER_KEY")
        if response.status_code >= 400:
            raise ChannelSendError(f"FCM error: {response.status_code}")

        result = response.json()
        if int(result.get("success", 0)) == 1:
            results = result.get("results") or [{}]
            return PushReceipt(accepted=True, provider_message_id=results[0].get("message_id"))

        error = ((result.get("results") or [{}])[0]).get("error") or "unknown"
        if error in _DEAD_TOKEN_ERRORS:
            logger.info("fcm_dead_token notification_id=%s error=%s", payload.notification_id, error)
        return PushReceipt(accepted=False, reason=str(error))
