# app/infra/pg_endpoint_repo_async.py
"""
Async PostgreSQL repository for push tokens (asyncpg).

Rows are registered by the client apps; this repository only reads
active tokens and flips ``is_active`` to false, never the other way.
"""
from __future__ import annotations

from typing import Sequence

from app.core.dispatch.domain import DeliveryEndpoint
from app.infra.db_resilience_async import retry_on_transient_error, store_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_endpoint(row) -> DeliveryEndpoint:
    """Convert an asyncpg Record to a DeliveryEndpoint dataclass."""
    return DeliveryEndpoint(
        id=str(row["id"]),
        recipient_id=str(row["user_id"]),
        token=row["token"],
        platform=row["platform"],
        is_active=row["is_active"],
    )


class AsyncPostgresEndpointStore:
    """Active endpoint lookup and batched deactivation."""

    @retry_on_transient_error(max_retries=2)
    async def fetch_active_endpoints(self, recipient_id: str) -> list[DeliveryEndpoint]:
        async with store_conn("fetch_active_endpoints") as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, token, platform, is_active
                FROM push_tokens
                WHERE user_id = $1::uuid
                  AND is_active = true
                ORDER BY id
                """,
                recipient_id,
            )
            return [_row_to_endpoint(row) for row in rows]

    @retry_on_transient_error(max_retries=2)
    async def batch_deactivate(self, tokens: Sequence[str]) -> int:
        """Deactivate endpoints by token. Already-inactive rows are untouched."""
        if not tokens:
            return 0
        async with store_conn("batch_deactivate") as conn:
            result = await conn.execute(
                """
                UPDATE push_tokens
                SET is_active = false, updated_at = now()
                WHERE token = ANY($1::text[])
                  AND is_active = true
                """,
                list(tokens),
            )
            count = int(result.split()[-1]) if result else 0
            if count > 0:
                logger.debug(f"Deactivated {count} push token(s)")
            return count


# Global singleton
_endpoint_store: AsyncPostgresEndpointStore | None = None


def get_endpoint_store() -> AsyncPostgresEndpointStore:
    """Get the global endpoint store instance."""
    global _endpoint_store
    if _endpoint_store is None:
        _endpoint_store = AsyncPostgresEndpointStore()
    return _endpoint_store
