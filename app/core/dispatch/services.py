# app/core/dispatch/services.py
"""
Dispatch pipeline components.

Each function is one stage of a dispatch cycle:

- ``fetch_due_notifications``   bounded read of due rows
- ``group_by_recipient``        pure partition of a batch
- ``resolve_endpoints``         active endpoints of one recipient
- ``dispatch_notification``     one multicast for one notification
- ``fan_out_recipient``         all notifications of one recipient
- ``deactivate_failed_endpoints`` / ``mark_delivered`` / ``record_failed_attempts``
                                batched, idempotent writes keyed by explicit ids

The orchestration (ordering, isolation, summary) lives in
``app.core.dispatch.engine``.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Sequence

from app.core.dispatch.domain import (
    DeliveryEndpoint,
    DispatchResult,
    EndpointOutcome,
    ScheduledNotification,
)
from app.core.dispatch.errors import TransportFailure
from app.core.dispatch.payloads import PushAppearance, build_notification_payload
from app.core.dispatch.ports import AsyncEndpointStore, AsyncNotificationStore, PushTransport
from app.infra.logging_config import LogContext, mask_token
from app.infra.metrics import DispatchMetrics

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

async def fetch_due_notifications(
    store: AsyncNotificationStore,
    now: datetime,
    limit: int = 50,
    *,
    retry_base_delay: float = 0.0,
    retry_max_delay: float = 0.0,
) -> list[ScheduledNotification]:
    """
    Return at most ``limit`` unsent notifications with scheduled_for <= now.

    Raises:
        StoreUnavailable: propagated unchanged, the caller aborts the cycle.
    """
    if limit <= 0:
        return []
    return await store.fetch_due(
        now,
        limit,
        retry_base_delay=retry_base_delay,
        retry_max_delay=retry_max_delay,
    )


def group_by_recipient(
    notifications: Iterable[ScheduledNotification],
) -> dict[str, list[ScheduledNotification]]:
    """Partition a batch by recipient, keeping batch order inside each group."""
    groups: dict[str, list[ScheduledNotification]] = {}
    for notification in notifications:
        groups.setdefault(notification.recipient_id, []).append(notification)
    return groups


async def resolve_endpoints(
    store: AsyncEndpointStore,
    recipient_id: str,
) -> list[DeliveryEndpoint]:
    """Active endpoints for one recipient. An empty list is a valid answer."""
    endpoints = await store.fetch_active_endpoints(recipient_id)
    # Stores are expected to filter already; never send to an inactive row.
    return [e for e in endpoints if e.is_active]


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

async def dispatch_notification(
    transport: PushTransport,
    notification: ScheduledNotification,
    endpoints: Sequence[DeliveryEndpoint],
    *,
    appearance: PushAppearance | None = None,
    log: LogContext | None = None,
) -> DispatchResult:
    """
    Send one notification to all ``endpoints`` with a single multicast.

    Delivered iff at least one endpoint accepted it.  Whole-call failures
    are logged and returned as an undelivered result; they never raise.
    """
    log = (log or LogContext(logger)).bind(notification_id=notification.id)

    if not endpoints:
        return DispatchResult(notification_id=notification.id, delivered=True, vacuous=True)

    tokens = [e.token for e in endpoints]
    payload = build_notification_payload(notification, appearance)

    try:
        response = await transport.send_multicast(tokens, payload)
    except TransportFailure as exc:
        DispatchMetrics.transport_failure(exc.code or "unknown")
        log.warning(f"Multicast failed, notification stays due: {exc.detail}")
        return DispatchResult(
            notification_id=notification.id, delivered=False, error=exc.detail,
        )
    except Exception as exc:
        DispatchMetrics.transport_failure(exc.__class__.__name__)
        log.error(
            f"Unexpected multicast error, notification stays due: "
            f"{exc.__class__.__name__}: {exc}",
            exc_info=True,
        )
        return DispatchResult(
            notification_id=notification.id,
            delivered=False,
            error=f"{exc.__class__.__name__}: {exc}",
        )

    if len(response.per_token) != len(endpoints):
        detail = f"Transport returned {len(response.per_token)} result(s) for {len(endpoints)} token(s)"
        DispatchMetrics.transport_failure("result_mismatch")
        log.error(f"{detail}, notification stays due")
        return DispatchResult(notification_id=notification.id, delivered=False, error=detail)

    outcomes: list[EndpointOutcome] = []
    for endpoint, token_result in zip(endpoints, response.per_token, strict=True):
        outcomes.append(
            EndpointOutcome(
                endpoint_id=endpoint.id,
                token=endpoint.token,
                success=token_result.success,
                error=token_result.error,
                invalid_token=token_result.invalid_token,
            )
        )
        if not token_result.success:
            log.info(
                f"Token {mask_token(endpoint.token)} failed "
                f"(platform={endpoint.platform}, invalid={token_result.invalid_token}): "
                f"{token_result.error}",
            )

    DispatchMetrics.multicast_sent(len(tokens), response.success_count, response.failure_count)
    delivered = response.success_count > 0
    log.info(
        f"Sent notification to {response.success_count}/{len(tokens)} devices "
        f"(delivered={delivered})",
    )
    return DispatchResult(
        notification_id=notification.id,
        delivered=delivered,
        outcomes=outcomes,
        error=None if delivered else "No endpoint accepted the notification",
    )


async def fan_out_recipient(
    transport: PushTransport,
    recipient_id: str,
    notifications: Sequence[ScheduledNotification],
    endpoints: Sequence[DeliveryEndpoint],
    *,
    appearance: PushAppearance | None = None,
    log: LogContext | None = None,
) -> list[DispatchResult]:
    """
    Dispatch every notification of one recipient.

    With no active endpoints all notifications are vacuously delivered and
    the transport is never called, so an unregistered recipient cannot
    block the batch.  Otherwise notifications are sent concurrently, one
    multicast each.
    """
    log = (log or LogContext(logger)).bind(recipient_id=recipient_id)

    if not endpoints:
        log.info(
            f"No active push tokens, marking {len(notifications)} notification(s) as delivered"
        )
        return [
            DispatchResult(notification_id=n.id, delivered=True, vacuous=True)
            for n in notifications
        ]

    return list(
        await asyncio.gather(
            *(
                dispatch_notification(
                    transport, n, endpoints, appearance=appearance, log=log,
                )
                for n in notifications
            )
        )
    )


def collect_failed_tokens(results: Iterable[DispatchResult]) -> list[str]:
    """Deduplicated failed tokens across results, first-seen order."""
    seen: dict[str, None] = {}
    for result in results:
        for token in result.failed_tokens:
            seen.setdefault(token, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Write side (batched, idempotent)
# ---------------------------------------------------------------------------

async def deactivate_failed_endpoints(
    store: AsyncEndpointStore,
    tokens: Iterable[str],
) -> int:
    """Deactivate endpoints for ``tokens`` in one call. Returns rows changed."""
    unique = list(dict.fromkeys(tokens))
    if not unique:
        return 0
    changed = await store.batch_deactivate(unique)
    logger.info(f"Deactivated {changed} failed token(s) ({len(unique)} reported)")
    return changed


async def mark_delivered(
    store: AsyncNotificationStore,
    ids: Iterable[str],
    now: datetime,
) -> int:
    """Mark ``ids`` as sent in one call. Already-sent ids are left as they are."""
    unique = list(dict.fromkeys(ids))
    if not unique:
        return 0
    return await store.batch_mark_sent(unique, now)


async def record_failed_attempts(
    store: AsyncNotificationStore,
    ids: Iterable[str],
    now: datetime,
) -> int:
    """Bump the attempt counter of undelivered notifications (never touches is_sent)."""
    unique = list(dict.fromkeys(ids))
    if not unique:
        return 0
    return await store.record_failed_attempts(unique, now)
