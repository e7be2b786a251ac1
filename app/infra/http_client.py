# app/infra/http_client.py
"""
Shared aiohttp sessions.

One lazily created ``ClientSession`` per profile, reused across requests and
closed once at shutdown with ``close_all_sessions()``.

Profiles
~~~~~~~~
- **sender**: webhook and relay deliveries. Total timeout is
  ``send_timeout_seconds``; every group bot lives on the same host, so the
  per-host limit is what actually bounds concurrency.

JSON bodies keep non-ASCII text unescaped (``ensure_ascii=False``).
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from functools import partial

import aiohttp

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

USER_AGENT = "wecast/1.0 (+aiohttp)"

_dumps = partial(json.dumps, ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class SessionProfile:
    total_timeout: float
    connect_timeout: float
    limit: int
    limit_per_host: int


_sessions: dict[str, aiohttp.ClientSession] = {}


def sender_profile() -> SessionProfile:
    return SessionProfile(
        total_timeout=settings.send_timeout_seconds,
        connect_timeout=5,
        limit=20,
        limit_per_host=10,
    )


def _get_or_create(name: str, profile: SessionProfile) -> aiohttp.ClientSession:
    session = _sessions.get(name)
    if session is not None and not session.closed:
        return session

    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=profile.total_timeout, connect=profile.connect_timeout),
        connector=aiohttp.TCPConnector(
            limit=profile.limit,
            limit_per_host=profile.limit_per_host,
            keepalive_timeout=30,
        ),
        headers={"User-Agent": USER_AGENT},
        json_serialize=_dumps,
    )
    _sessions[name] = session
    logger.debug(
        f"HTTP session '{name}' created "
        f"(timeout={profile.total_timeout}s, limit={profile.limit}/{profile.limit_per_host} per host)"
    )
    return session


def get_sender_session() -> aiohttp.ClientSession:
    """Session used by ``RelayTransport`` and ``WebhookTransport``."""
    return _get_or_create("sender", sender_profile())


async def close_all_sessions() -> None:
    for name in list(_sessions):
        session = _sessions.pop(name)
        if not session.closed:
            await session.close()
            logger.debug(f"HTTP session '{name}' closed")
