# app/infra/pg_notification_repo_async.py
"""
Async PostgreSQL repository for scheduled notifications (asyncpg).

Every write is keyed by an explicit id set and guarded so that repeating
it is a no-op; overlapping dispatch cycles rely on that.
"""
from __future__ import annotations

from datetime import datetime
from typing import Sequence

from app.core.dispatch.domain import ScheduledNotification
from app.infra.db_resilience_async import retry_on_transient_error, store_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_notification(row) -> ScheduledNotification:
    """Convert an asyncpg Record to a ScheduledNotification dataclass."""
    related = row["checklist_item_id"]
    return ScheduledNotification(
        id=str(row["id"]),
        recipient_id=str(row["user_id"]),
        notification_kind=row["notification_type"],
        title=row["title"],
        body=row["body"],
        scheduled_for=row["scheduled_for"],
        related_item_id=str(related) if related is not None else None,
        sent_at=row["sent_at"],
        is_sent=row["is_sent"],
        attempts=row.get("attempts") or 0,
        last_attempt_at=row.get("last_attempt_at"),
    )


def _command_count(result: str | None) -> int:
    """Row count from an asyncpg status string such as ``UPDATE 3``."""
    return int(result.split()[-1]) if result else 0


class AsyncPostgresNotificationStore:
    """Reads due notifications and applies batched status updates."""

    @retry_on_transient_error(max_retries=2)
    async def fetch_due(
        self,
        now: datetime,
        limit: int,
        *,
        retry_base_delay: float = 0.0,
        retry_max_delay: float = 0.0,
    ) -> list[ScheduledNotification]:
        """
        Fetch up to ``limit`` unsent notifications due at ``now``.

        With ``retry_base_delay > 0`` a notification that already failed
        ``attempts`` times is held back until
        ``last_attempt_at + min(base * 2^(attempts-1), max_delay)``,
        and rows with fewer attempts are served first.
        """
        async with store_conn("fetch_due") as conn:
            if retry_base_delay > 0:
                rows = await conn.fetch(
                    """
                    SELECT id, user_id, checklist_item_id, notification_type, title, body,
                           scheduled_for, sent_at, is_sent, attempts, last_attempt_at
                    FROM scheduled_notifications
                    WHERE is_sent = false
                      AND scheduled_for <= $1
                      AND (
                        attempts = 0
                        OR last_attempt_at IS NULL
                        OR last_attempt_at + make_interval(
                             secs => LEAST($3, $2 * power(2, attempts - 1))
                           ) <= $1
                      )
                    ORDER BY attempts, scheduled_for
                    LIMIT $4
                    """,
                    now,
                    float(retry_base_delay),
                    float(retry_max_delay),
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT id, user_id, checklist_item_id, notification_type, title, body,
                           scheduled_for, sent_at, is_sent, attempts, last_attempt_at
                    FROM scheduled_notifications
                    WHERE is_sent = false
                      AND scheduled_for <= $1
                    ORDER BY scheduled_for
                    LIMIT $2
                    """,
                    now,
                    limit,
                )
            return [_row_to_notification(row) for row in rows]

    @retry_on_transient_error(max_retries=2)
    async def batch_mark_sent(self, ids: Sequence[str], now: datetime) -> int:
        """Mark notifications as sent. Rows already sent keep their original sent_at."""
        if not ids:
            return 0
        async with store_conn("batch_mark_sent") as conn:
            result = await conn.execute(
                """
                UPDATE scheduled_notifications
                SET is_sent = true, sent_at = $2
                WHERE id = ANY($1::uuid[])
                  AND is_sent = false
                """,
                list(ids),
                now,
            )
            count = _command_count(result)
            logger.debug(f"Marked {count}/{len(ids)} notification(s) as sent")
            return count

    @retry_on_transient_error(max_retries=2)
    async def record_failed_attempts(self, ids: Sequence[str], now: datetime) -> int:
        """Increment the attempt counter of still-unsent notifications."""
        if not ids:
            return 0
        async with store_conn("record_failed_attempts") as conn:
            result = await conn.execute(
                """
                UPDATE scheduled_notifications
                SET attempts = attempts + 1, last_attempt_at = $2
                WHERE id = ANY($1::uuid[])
                  AND is_sent = false
                """,
                list(ids),
                now,
            )
            return _command_count(result)

    @retry_on_transient_error(max_retries=2)
    async def batch_delete_sent_before(self, cutoff: datetime) -> int:
        """Delete sent notifications with sent_at older than cutoff. Returns count deleted."""
        async with store_conn("batch_delete_sent_before") as conn:
            result = await conn.execute(
                """
                DELETE FROM scheduled_notifications
                WHERE is_sent = true
                  AND sent_at < $1
                """,
                cutoff,
            )
            return _command_count(result)


# Global singleton
_notification_store: AsyncPostgresNotificationStore | None = None


def get_notification_store() -> AsyncPostgresNotificationStore:
    """Get the global notification store instance."""
    global _notification_store
    if _notification_store is None:
        _notification_store = AsyncPostgresNotificationStore()
    return _notification_store
