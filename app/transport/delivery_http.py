# app/transport/delivery_http.py
"""
HTTP plumbing shared by the relay and direct webhook transports.

Reply classification:
- 2xx with ``{"errcode": 0}``  -> success
- 2xx with any other body      -> failure, ``errmsg`` / ``error`` as message
- 4xx / 5xx                    -> failure, ``"HTTP <status>: <errmsg>"``

Network problems raise ``TransportError`` with a short normalized message
(``network timeout``, ``connection failed``) so the user-facing summary
never carries a stack of aiohttp internals.
"""
from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from app.core.dispatch.domain import SendResult
from app.core.dispatch.errors import TransportError
from app.infra.http_client import get_sender_session
from app.infra.logging_config import get_logger, mask_webhook

logger = get_logger(__name__)


async def _safe_response_json(resp: aiohttp.ClientResponse) -> Any:
    """Parse JSON regardless of Content-Type, returning None if the body is not JSON."""
    try:
        return await resp.json(content_type=None)
    except (ValueError, aiohttp.ContentTypeError):
        logger.warning(f"Delivery target returned non-JSON body: status={resp.status}")
        return None


def _error_text(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        return body.get("errmsg") or body.get("error") or fallback
    return fallback


async def post_and_classify(
    url: str,
    *,
    json: dict | None = None,
    data: aiohttp.FormData | None = None,
) -> SendResult:
    """
    POST once (no retries) and classify the reply.

    Raises:
        TransportError: timeout, connection failure or other client error
    """
    session = get_sender_session()
    try:
        async with session.post(url, json=json, data=data) as resp:
            body = await _safe_response_json(resp)

            if resp.status >= 400:
                errcode = body.get("errcode") if isinstance(body, dict) else None
                return SendResult(
                    success=False,
                    error_code=errcode if isinstance(errcode, int) else None,
                    error_message=f"HTTP {resp.status}: {_error_text(body, resp.reason or 'request failed')}",
                )

            return SendResult.from_response(body, default_error=f"HTTP {resp.status}: invalid response body")

    except asyncio.TimeoutError:
        logger.warning(f"Delivery timed out: {mask_webhook(url)}")
        raise TransportError("network timeout")
    except aiohttp.ClientConnectionError as exc:
        logger.warning(f"Delivery connection failed: {mask_webhook(url)} ({type(exc).__name__})")
        raise TransportError("connection failed")
    except aiohttp.ClientError as exc:
        logger.warning(f"Delivery client error: {mask_webhook(url)} ({type(exc).__name__})")
        raise TransportError(f"request failed: {type(exc).__name__}")
