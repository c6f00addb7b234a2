# app/core/dispatch/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Protocol, Sequence

from app.core.dispatch.domain import (
    DeliveryEndpoint,
    MulticastResult,
    ScheduledNotification,
)
from app.core.dispatch.payloads import PlatformPayload


# ============================================================================
# ASYNC PROTOCOLS (asyncpg / firebase-admin implementations live in app.infra)
# ============================================================================

class AsyncNotificationStore(Protocol):
    async def fetch_due(
        self,
        now: datetime,
        limit: int,
        *,
        retry_base_delay: float = 0.0,
        retry_max_delay: float = 0.0,
    ) -> list[ScheduledNotification]: ...

    async def batch_mark_sent(self, ids: Sequence[str], now: datetime) -> int:
        """Set is_sent/sent_at for ids not yet sent. Returns rows changed."""
        ...

    async def record_failed_attempts(self, ids: Sequence[str], now: datetime) -> int: ...

    async def batch_delete_sent_before(self, cutoff: datetime) -> int: ...


class AsyncEndpointStore(Protocol):
    async def fetch_active_endpoints(self, recipient_id: str) -> list[DeliveryEndpoint]: ...

    async def batch_deactivate(self, tokens: Sequence[str]) -> int:
        """Set is_active=false for active endpoints with these tokens. Returns rows changed."""
        ...


class PushTransport(Protocol):
    def ensure_ready(self) -> None:
        """Raise ConfigurationError when credentials are missing or unusable."""
        ...

    async def send_multicast(
        self, tokens: Sequence[str], payload: PlatformPayload
    ) -> MulticastResult: ...
