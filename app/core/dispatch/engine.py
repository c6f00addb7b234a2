# app/core/dispatch/engine.py
"""
Dispatch engine: the three operational entry points.

- ``run_dispatch_cycle()``     periodic (every few minutes)
- ``run_retention_cleanup()``  periodic (daily)
- ``send_test()``              ad-hoc manual verification

All collaborators come from one ``DispatchContext`` built at process start
and shared by reference; the engine itself holds no per-cycle state, so
overlapping cycles are safe as long as the writes stay idempotent.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.core.dispatch.domain import (
    CleanupResult,
    CycleSummary,
    DispatchResult,
    NotificationKind,
    RecipientResult,
    ScheduledNotification,
    TestSendResult,
)
from app.core.dispatch.errors import ConfigurationError, StoreUnavailable
from app.core.dispatch.payloads import PushAppearance
from app.core.dispatch.ports import AsyncEndpointStore, AsyncNotificationStore, PushTransport
from app.core.dispatch.services import (
    collect_failed_tokens,
    deactivate_failed_endpoints,
    dispatch_notification,
    fan_out_recipient,
    fetch_due_notifications,
    group_by_recipient,
    mark_delivered,
    record_failed_attempts,
    resolve_endpoints,
)
from app.infra.logging_config import LogContext
from app.infra.metrics import DispatchMetrics

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DispatchOptions:
    batch_limit: int = 50
    retry_base_delay: float = 0.0
    retry_max_delay: float = 21600.0
    retention_days: int = 30
    appearance: PushAppearance = field(default_factory=PushAppearance)

    @classmethod
    def from_settings(cls, s) -> "DispatchOptions":
        return cls(
            batch_limit=s.dispatch_batch_limit,
            retry_base_delay=s.dispatch_retry_base_delay_seconds,
            retry_max_delay=s.dispatch_retry_max_delay_seconds,
            retention_days=s.retention_days,
            appearance=PushAppearance.from_settings(s),
        )


@dataclass
class DispatchContext:
    """Store and transport handles shared by every component."""
    notifications: AsyncNotificationStore
    endpoints: AsyncEndpointStore
    transport: PushTransport
    options: DispatchOptions = field(default_factory=DispatchOptions)
    clock: Callable[[], datetime] = utc_now


class DispatchEngine:
    def __init__(self, ctx: DispatchContext):
        self._ctx = ctx
        self._config_error_logged = False

    @property
    def context(self) -> DispatchContext:
        return self._ctx

    # ------------------------------------------------------------------
    # Transport readiness
    # ------------------------------------------------------------------

    def _transport_ready(self, log: LogContext) -> bool:
        try:
            self._ctx.transport.ensure_ready()
        except ConfigurationError as exc:
            # Logged once until the transport becomes ready again
            if not self._config_error_logged:
                log.error(f"Push transport not configured, dispatch is a no-op: {exc.detail}")
                self._config_error_logged = True
            return False
        self._config_error_logged = False
        return True

    # ------------------------------------------------------------------
    # Dispatch cycle
    # ------------------------------------------------------------------

    async def run_dispatch_cycle(self) -> CycleSummary:
        """
        Run one dispatch cycle and return its summary.

        Never raises for store, transport or per-recipient failures: those
        are recorded in the summary and the affected notifications stay due
        for the next tick.
        """
        ctx = self._ctx
        opts = ctx.options
        now = ctx.clock()
        summary = CycleSummary(cycle_id=uuid.uuid4().hex[:12], started_at=now)
        log = LogContext(logger, cycle_id=summary.cycle_id)

        with DispatchMetrics.track_cycle_time():
            if not self._transport_ready(log):
                summary.skipped = True
                return self._finish(summary, log)

            try:
                batch = await fetch_due_notifications(
                    ctx.notifications,
                    now,
                    opts.batch_limit,
                    retry_base_delay=opts.retry_base_delay,
                    retry_max_delay=opts.retry_max_delay,
                )
            except StoreUnavailable as exc:
                DispatchMetrics.store_error("fetch_due")
                log.error(f"Error fetching notifications, cycle aborted: {exc.detail}")
                summary.aborted = True
                summary.error = exc.detail
                return self._finish(summary, log)

            summary.fetched = len(batch)
            if not batch:
                log.debug("No notifications to send")
                return self._finish(summary, log)

            groups = group_by_recipient(batch)
            summary.recipients = len(groups)
            log.info(f"Found {len(batch)} notification(s) for {len(groups)} recipient(s)")

            recipient_results = await asyncio.gather(
                *(
                    self._process_recipient(recipient_id, items, log)
                    for recipient_id, items in groups.items()
                )
            )

            results: list[DispatchResult] = []
            for rr in recipient_results:
                results.extend(rr.results)
                if rr.error:
                    summary.recipient_errors += 1

            await self._commit(results, summary, now, log)

        return self._finish(summary, log)

    async def _process_recipient(
        self,
        recipient_id: str,
        notifications: list[ScheduledNotification],
        log: LogContext,
    ) -> RecipientResult:
        """Resolve + fan out for one recipient. Any failure stays inside this recipient."""
        rlog = log.bind(recipient_id=recipient_id)
        try:
            endpoints = await resolve_endpoints(self._ctx.endpoints, recipient_id)
            results = await fan_out_recipient(
                self._ctx.transport,
                recipient_id,
                notifications,
                endpoints,
                appearance=self._ctx.options.appearance,
                log=rlog,
            )
            return RecipientResult(recipient_id=recipient_id, results=results)
        except StoreUnavailable as exc:
            DispatchMetrics.store_error("fetch_active_endpoints")
            rlog.error(f"Error fetching tokens, recipient skipped this cycle: {exc.detail}")
            return RecipientResult(recipient_id=recipient_id, error=exc.detail)
        except Exception as exc:
            rlog.error(
                f"Error processing notifications for recipient: {exc.__class__.__name__}: {exc}",
                exc_info=True,
            )
            return RecipientResult(
                recipient_id=recipient_id, error=f"{exc.__class__.__name__}: {exc}",
            )

    async def _commit(
        self,
        results: list[DispatchResult],
        summary: CycleSummary,
        now: datetime,
        log: LogContext,
    ) -> None:
        """Health Manager, then Sent-Marker, then attempt bookkeeping."""
        ctx = self._ctx

        delivered_ids = [r.notification_id for r in results if r.delivered]
        failed_ids = [r.notification_id for r in results if not r.delivered and r.attempted]
        failed_tokens = collect_failed_tokens(results)

        summary.delivered = len(delivered_ids)
        summary.vacuous = sum(1 for r in results if r.vacuous)
        summary.failed = len(failed_ids)
        summary.token_failures = sum(
            1 for r in results for o in r.outcomes if not o.success
        )

        # Tokens missed here are reported again by the next cycle that uses them
        try:
            summary.deactivated = await deactivate_failed_endpoints(ctx.endpoints, failed_tokens)
        except StoreUnavailable as exc:
            DispatchMetrics.store_error("batch_deactivate")
            log.error(f"Error deactivating {len(failed_tokens)} token(s): {exc.detail}")
            summary.error = exc.detail

        # Unmarked rows stay due and are re-sent next tick (duplicate push, no loss)
        try:
            summary.marked_sent = await mark_delivered(ctx.notifications, delivered_ids, now)
        except StoreUnavailable as exc:
            DispatchMetrics.store_error("batch_mark_sent")
            log.error(f"Error marking {len(delivered_ids)} notification(s) as sent: {exc.detail}")
            summary.error = exc.detail

        try:
            await record_failed_attempts(ctx.notifications, failed_ids, now)
        except StoreUnavailable as exc:
            DispatchMetrics.store_error("record_failed_attempts")
            log.warning(f"Error recording failed attempts: {exc.detail}")

    def _finish(self, summary: CycleSummary, log: LogContext) -> CycleSummary:
        summary.finished_at = self._ctx.clock()
        DispatchMetrics.cycle_finished(summary)
        if summary.fetched or summary.aborted:
            log.info(
                f"Dispatch cycle finished: fetched={summary.fetched}, "
                f"delivered={summary.delivered} (vacuous={summary.vacuous}), "
                f"failed={summary.failed}, deactivated={summary.deactivated}, "
                f"aborted={summary.aborted}",
                extra={"summary": summary.to_dict()},
            )
        return summary

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def run_retention_cleanup(self) -> CleanupResult:
        """Delete delivered notifications older than the retention window."""
        now = self._ctx.clock()
        cutoff = now - timedelta(days=self._ctx.options.retention_days)
        try:
            deleted = await self._ctx.notifications.batch_delete_sent_before(cutoff)
        except StoreUnavailable as exc:
            DispatchMetrics.store_error("batch_delete_sent_before")
            DispatchMetrics.retention_run(0, ok=False)
            logger.error(f"Error cleaning up notifications: {exc.detail}")
            return CleanupResult(cutoff=cutoff, ok=False, error=exc.detail)

        DispatchMetrics.retention_run(deleted, ok=True)
        logger.info(
            f"Cleaned up {deleted} sent notification(s) older than "
            f"{self._ctx.options.retention_days} days"
        )
        return CleanupResult(cutoff=cutoff, deleted=deleted)

    # ------------------------------------------------------------------
    # Ad-hoc test send
    # ------------------------------------------------------------------

    async def send_test(self, recipient_id: str, title: str, body: str) -> TestSendResult:
        """
        Send a synthetic, non-persisted notification to a recipient's devices.

        Reuses the fan-out path; failed tokens found along the way are
        deactivated, but nothing is marked as sent.
        """
        log = LogContext(logger, recipient_id=recipient_id)

        try:
            endpoints = await resolve_endpoints(self._ctx.endpoints, recipient_id)
        except StoreUnavailable as exc:
            log.error(f"Test notification: error fetching tokens: {exc.detail}")
            return TestSendResult(success=False, message="Push token store unavailable")

        if not endpoints:
            return TestSendResult(
                success=False,
                message="No active push tokens found for user",
                no_endpoints=True,
            )

        if not self._transport_ready(log):
            return TestSendResult(success=False, message="Push transport not configured")

        notification = ScheduledNotification(
            id="test",
            recipient_id=recipient_id,
            notification_kind=NotificationKind.CHECKLIST_REMINDER.value,
            title=title,
            body=body,
            scheduled_for=self._ctx.clock(),
        )
        result = await dispatch_notification(
            self._ctx.transport,
            notification,
            endpoints,
            appearance=self._ctx.options.appearance,
            log=log,
        )

        try:
            await deactivate_failed_endpoints(self._ctx.endpoints, result.failed_tokens)
        except StoreUnavailable as exc:
            log.warning(f"Test notification: error deactivating tokens: {exc.detail}")

        if result.delivered:
            return TestSendResult(success=True, message="Test notification sent")
        return TestSendResult(success=False, message="Failed to send notification")
