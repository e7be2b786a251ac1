# app/infra/pg_endpoint_repo_async.py
"""
Async PostgreSQL endpoint directory (asyncpg).

Reads the ``webhooks`` and ``groups`` tables.  Every query is scoped to
one ``user_id``; a principal never sees another principal's webhooks.
"""
from __future__ import annotations

from typing import Optional

import asyncpg

from app.core.dispatch.domain import DeliveryEndpoint
from app.core.dispatch.errors import PersistenceError
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_endpoint(row) -> DeliveryEndpoint:
    group_id = row["group_id"]
    return DeliveryEndpoint(
        id=str(row["id"]),
        url=row["webhook_url"],
        owner_id=row["user_id"],
        group_id=str(group_id) if group_id is not None else None,
        active=row["status"] == "active",
        name=row["name"],
    )


class AsyncPostgresEndpointDirectory:
    async def list_active(self, owner_id: str) -> list[DeliveryEndpoint]:
        try:
            async with db_conn() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, webhook_url, group_id, user_id, status, name
                    FROM webhooks
                    WHERE user_id = $1 AND status = 'active'
                    ORDER BY created_at, id
                    """,
                    owner_id,
                )
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Webhook lookup failed: {type(e).__name__}: {e}", extra={"user_id": owner_id})
            raise PersistenceError(str(e)) from e
        return [_row_to_endpoint(row) for row in rows]

    async def group_ids(self, owner_id: str) -> set[str]:
        try:
            async with db_conn() as conn:
                rows = await conn.fetch("SELECT id FROM groups WHERE user_id = $1", owner_id)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Group lookup failed: {type(e).__name__}: {e}", extra={"user_id": owner_id})
            raise PersistenceError(str(e)) from e
        return {str(row["id"]) for row in rows}

    async def count_by_status(self, owner_id: Optional[str] = None) -> dict[str, int]:
        """Return {"active": n, "inactive": m}."""
        try:
            async with db_conn() as conn:
                if owner_id:
                    rows = await conn.fetch(
                        "SELECT status, count(*)::int as cnt FROM webhooks WHERE user_id = $1 GROUP BY status",
                        owner_id,
                    )
                else:
                    rows = await conn.fetch(
                        "SELECT status, count(*)::int as cnt FROM webhooks GROUP BY status",
                    )
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Webhook count failed: {type(e).__name__}: {e}")
            raise PersistenceError(str(e)) from e

        counts = {"active": 0, "inactive": 0}
        for row in rows:
            counts["active" if row["status"] == "active" else "inactive"] += row["cnt"]
        return counts
