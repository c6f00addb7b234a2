# app/core/dispatch/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# ENUMS
# ============================================================================

class NotificationKind(str, Enum):
    """
    Known notification kinds. The set is open: producers may write any
    string into ``notification_type`` and it is carried through untouched.
    """
    CHECKLIST_REMINDER = "checklist_reminder"
    IMMUNIZATION_DUE = "immunization_due"
    APPOINTMENT_REMINDER = "appointment_reminder"


class Platform(str, Enum):
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"


# ============================================================================
# PERSISTED ROWS (created by upstream producers)
# ============================================================================

@dataclass
class ScheduledNotification:
    id: str
    recipient_id: str
    notification_kind: str
    title: str
    body: str
    scheduled_for: datetime
    related_item_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    is_sent: bool = False
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None


@dataclass
class DeliveryEndpoint:
    id: str
    recipient_id: str
    token: str
    platform: str
    is_active: bool = True


# ============================================================================
# TRANSPORT RESULTS
# ============================================================================

@dataclass
class TokenResult:
    """Outcome for one token of a multicast send (same order as the tokens sent)."""
    token: str
    success: bool
    error: Optional[str] = None
    invalid_token: bool = False  # Token rejected permanently (unregistered / malformed)


@dataclass
class MulticastResult:
    success_count: int
    failure_count: int
    per_token: list[TokenResult] = field(default_factory=list)


# ============================================================================
# CYCLE RESULTS (transient, never persisted)
# ============================================================================

@dataclass
class EndpointOutcome:
    endpoint_id: str
    token: str
    success: bool
    error: Optional[str] = None
    invalid_token: bool = False


@dataclass
class DispatchResult:
    """Fan-out outcome of one notification."""
    notification_id: str
    delivered: bool
    vacuous: bool = False  # Delivered without a transport call (no active endpoints)
    outcomes: list[EndpointOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def attempted(self) -> bool:
        """True when a multicast was issued (or tried) for this notification"""
        return not self.vacuous

    @property
    def failed_tokens(self) -> list[str]:
        """Every token the transport reported as failed; all of them get deactivated"""
        return [o.token for o in self.outcomes if not o.success]

    @property
    def invalid_tokens(self) -> list[str]:
        """Subset of ``failed_tokens`` rejected permanently (unregistered / malformed)"""
        return [o.token for o in self.outcomes if not o.success and o.invalid_token]


@dataclass
class RecipientResult:
    recipient_id: str
    results: list[DispatchResult] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class CycleSummary:
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    fetched: int = 0
    recipients: int = 0
    delivered: int = 0   # Includes vacuous deliveries
    vacuous: int = 0
    failed: int = 0
    recipient_errors: int = 0
    token_failures: int = 0
    deactivated: int = 0
    marked_sent: int = 0
    aborted: bool = False
    skipped: bool = False  # Transport not configured
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "fetched": self.fetched,
            "recipients": self.recipients,
            "delivered": self.delivered,
            "vacuous": self.vacuous,
            "failed": self.failed,
            "recipient_errors": self.recipient_errors,
            "token_failures": self.token_failures,
            "deactivated": self.deactivated,
            "marked_sent": self.marked_sent,
            "aborted": self.aborted,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class CleanupResult:
    cutoff: datetime
    deleted: int = 0
    ok: bool = True
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cutoff": self.cutoff.isoformat(),
            "deleted": self.deleted,
            "ok": self.ok,
            "error": self.error,
        }


@dataclass
class TestSendResult:
    success: bool
    message: str
    no_endpoints: bool = False
    # Not a pytest test class despite the name
    __test__ = False
