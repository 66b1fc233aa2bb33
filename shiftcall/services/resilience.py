from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from shiftcall.core.config import get_settings
from shiftcall.core.errors import ChannelError, ChannelSendError, ChannelTimeoutError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_timeout_ms() -> int:
    return max(1, int(get_settings().channel_call_timeout_ms))


async def call_with_timeout(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    timeout_ms: int | None = None,
) -> T:
    # Channel sends are never retried here; a timeout or transport failure escalates to the next channel.
    resolved_timeout_ms = timeout_ms or default_timeout_ms()
    try:
        return await asyncio.wait_for(func(), timeout=resolved_timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        logger.warning("channel_call_timeout operation=%s timeout_ms=%s", operation, resolved_timeout_ms)
        raise ChannelTimeoutError(f"{operation} timed out after {resolved_timeout_ms}ms") from exc
    except ChannelError:
        raise
    except httpx.HTTPError as exc:
        logger.warning("channel_call_transport_error operation=%s", operation, exc_info=exc)
        raise ChannelSendError(f"{operation} transport error: {type(exc).__name__}") from exc
    except Exception as exc:  # noqa: BLE001 - any adapter failure is a failed send
        logger.error("channel_call_unexpected_error operation=%s", operation, exc_info=exc)
        raise ChannelSendError(f"{operation} failed: {type(exc).__name__}") from exc
