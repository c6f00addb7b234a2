# tests/helpers.py
"""In-memory fakes for the dispatch ports, plus row builders."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence

from app.core.dispatch.domain import (
    DeliveryEndpoint,
    MulticastResult,
    ScheduledNotification,
    TokenResult,
)
from app.core.dispatch.engine import DispatchContext, DispatchEngine, DispatchOptions
from app.core.dispatch.errors import ConfigurationError, StoreUnavailable, TransportFailure

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory fakes for the store and transport ports
# ---------------------------------------------------------------------------

class FakeNotificationStore:
    """Dict-backed notification store with the same write guards as the SQL."""

    def __init__(self, notifications: Sequence[ScheduledNotification] = ()):
        self.rows: dict[str, ScheduledNotification] = {n.id: n for n in notifications}
        self.fail_on: set[str] = set()
        self.calls: list[tuple] = []

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StoreUnavailable(f"{operation} failed: connection refused", operation=operation)

    async def fetch_due(self, now, limit, *, retry_base_delay=0.0, retry_max_delay=0.0):
        self.calls.append(("fetch_due", now, limit))
        self._maybe_fail("fetch_due")
        due = [n for n in self.rows.values() if not n.is_sent and n.scheduled_for <= now]
        due.sort(key=lambda n: n.scheduled_for)
        return due[:limit]

    async def batch_mark_sent(self, ids, now):
        self.calls.append(("batch_mark_sent", list(ids), now))
        self._maybe_fail("batch_mark_sent")
        changed = 0
        for nid in ids:
            row = self.rows.get(nid)
            if row is not None and not row.is_sent:
                row.is_sent = True
                row.sent_at = now
                changed += 1
        return changed

    async def record_failed_attempts(self, ids, now):
        self.calls.append(("record_failed_attempts", list(ids), now))
        self._maybe_fail("record_failed_attempts")
        changed = 0
        for nid in ids:
            row = self.rows.get(nid)
            if row is not None and not row.is_sent:
                row.attempts += 1
                row.last_attempt_at = now
                changed += 1
        return changed

    async def batch_delete_sent_before(self, cutoff):
        self.calls.append(("batch_delete_sent_before", cutoff))
        self._maybe_fail("batch_delete_sent_before")
        doomed = [
            nid for nid, n in self.rows.items()
            if n.is_sent and n.sent_at is not None and n.sent_at < cutoff
        ]
        for nid in doomed:
            del self.rows[nid]
        return len(doomed)

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeEndpointStore:
    def __init__(self, endpoints: Sequence[DeliveryEndpoint] = ()):
        self.rows: list[DeliveryEndpoint] = list(endpoints)
        self.fail_for: set[str] = set()
        self.fail_deactivate = False
        self.deactivate_calls: list[list[str]] = []
        self.fetch_calls: list[str] = []

    async def fetch_active_endpoints(self, recipient_id):
        self.fetch_calls.append(recipient_id)
        if recipient_id in self.fail_for:
            raise StoreUnavailable("fetch_active_endpoints failed: timeout", operation="fetch_active_endpoints")
        return [e for e in self.rows if e.recipient_id == recipient_id and e.is_active]

    async def batch_deactivate(self, tokens):
        self.deactivate_calls.append(list(tokens))
        if self.fail_deactivate:
            raise StoreUnavailable("batch_deactivate failed: timeout", operation="batch_deactivate")
        changed = 0
        for endpoint in self.rows:
            if endpoint.token in tokens and endpoint.is_active:
                endpoint.is_active = False
                changed += 1
        return changed

    def active_tokens(self) -> set[str]:
        return {e.token for e in self.rows if e.is_active}


class FakeTransport:
    """
    Scripted push transport.

    ``token_errors`` maps a token to ``"invalid"`` or ``"transient"``;
    every other token succeeds.  ``fail_titles`` makes the whole multicast
    raise ``TransportFailure`` for notifications with that title.
    """

    def __init__(self, token_errors: dict[str, str] | None = None, fail_titles: Sequence[str] = ()):
        self.token_errors = token_errors or {}
        self.fail_titles = set(fail_titles)
        self.configured = True
        self.calls: list[tuple[list[str], object]] = []

    def ensure_ready(self) -> None:
        if not self.configured:
            raise ConfigurationError("Firebase credentials missing")

    async def send_multicast(self, tokens, payload):
        self.calls.append((list(tokens), payload))
        if payload.title in self.fail_titles:
            raise TransportFailure("FCM error: service unavailable", code="UNAVAILABLE")

        per_token = []
        for token in tokens:
            kind = self.token_errors.get(token)
            if kind is None:
                per_token.append(TokenResult(token=token, success=True))
            else:
                per_token.append(
                    TokenResult(
                        token=token,
                        success=False,
                        error=f"{kind} error",
                        invalid_token=kind == "invalid",
                    )
                )
        success = sum(1 for r in per_token if r.success)
        return MulticastResult(
            success_count=success,
            failure_count=len(per_token) - success,
            per_token=per_token,
        )


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_notification(
    nid: str,
    recipient_id: str = "user-a",
    *,
    kind: str = "checklist_reminder",
    title: str | None = None,
    body: str = "Don't forget your checklist",
    minutes_ago: int = 10,
    is_sent: bool = False,
    sent_at: datetime | None = None,
) -> ScheduledNotification:
    return ScheduledNotification(
        id=nid,
        recipient_id=recipient_id,
        notification_kind=kind,
        title=title or f"Reminder {nid}",
        body=body,
        scheduled_for=NOW - timedelta(minutes=minutes_ago),
        related_item_id=f"item-{nid}",
        is_sent=is_sent,
        sent_at=sent_at,
    )


def make_endpoint(
    eid: str,
    recipient_id: str = "user-a",
    *,
    token: str | None = None,
    platform: str = "android",
    is_active: bool = True,
) -> DeliveryEndpoint:
    return DeliveryEndpoint(
        id=eid,
        recipient_id=recipient_id,
        token=token or f"token-{eid}-xxxxxxxxxxxx",
        platform=platform,
        is_active=is_active,
    )


def make_engine(
    notifications: FakeNotificationStore,
    endpoints: FakeEndpointStore,
    transport: FakeTransport,
    **options,
) -> DispatchEngine:
    return DispatchEngine(
        DispatchContext(
            notifications=notifications,
            endpoints=endpoints,
            transport=transport,
            options=DispatchOptions(**options),
            clock=lambda: NOW,
        )
    )

