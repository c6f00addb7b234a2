# app/core/dispatch/payloads.py
"""
Pure push payload construction.

``platform_payload()`` maps a notification kind plus its text to one
``PlatformPayload`` holding the common notification, the data map and a
block per target platform.  Nothing here does I/O, so the mapping can be
tested without a transport.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.core.dispatch.domain import NotificationKind, Platform, ScheduledNotification

DEFAULT_TARGET_PATH = "/dashboard"

_TARGET_PATHS: dict[str, str] = {
    NotificationKind.CHECKLIST_REMINDER.value: "/dashboard/checklist",
    NotificationKind.IMMUNIZATION_DUE.value: "/dashboard/checklist",
    NotificationKind.APPOINTMENT_REMINDER.value: "/dashboard/checklist",
}


@dataclass(frozen=True)
class PushAppearance:
    """Per-platform presentation constants (icons, colors, channels)."""
    android_icon: str = "notification_icon"
    android_color: str = "#7D0820"
    android_channel_id: str = "pam_reminders"
    apns_category: str = "PAM_REMINDER"
    web_icon: str = "/icons/pwa-192x192.png"
    web_badge: str = "/icons/pwa-96x96.png"
    web_tag: str = "pam-reminder"
    web_base_url: str = ""  # Absolute origin for the web click-through link, e.g. https://app.example.com

    @classmethod
    def from_settings(cls, s) -> "PushAppearance":
        return cls(
            android_icon=s.push_android_icon,
            android_color=s.push_android_color,
            android_channel_id=s.push_android_channel_id,
            apns_category=s.push_apns_category,
            web_icon=s.push_web_icon,
            web_badge=s.push_web_badge,
            web_tag=s.push_web_tag,
            web_base_url=s.push_web_base_url or "",
        )


@dataclass(frozen=True)
class PlatformPayload:
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)
    android: dict[str, Any] = field(default_factory=dict)
    apns: dict[str, Any] = field(default_factory=dict)
    webpush: dict[str, Any] = field(default_factory=dict)

    def for_platform(self, platform: str) -> dict[str, Any]:
        """Return the platform block for ``platform`` (empty for unknown platforms)."""
        return {
            Platform.ANDROID.value: self.android,
            Platform.IOS.value: self.apns,
            Platform.WEB.value: self.webpush,
        }.get(platform, {})


def target_path(kind: str) -> str:
    """Deep-link path opened when the user taps the notification."""
    return _TARGET_PATHS.get(kind, DEFAULT_TARGET_PATH)


def android_config(appearance: PushAppearance) -> dict[str, Any]:
    return {
        "priority": "high",
        "notification": {
            "icon": appearance.android_icon,
            "color": appearance.android_color,
            "channel_id": appearance.android_channel_id,
        },
    }


def apns_config(appearance: PushAppearance) -> dict[str, Any]:
    return {
        "aps": {
            "badge": 1,
            "sound": "default",
            "category": appearance.apns_category,
        },
    }


def webpush_config(appearance: PushAppearance, path: str) -> dict[str, Any]:
    link = f"{appearance.web_base_url.rstrip('/')}{path}" if appearance.web_base_url else path
    return {
        "notification": {
            "icon": appearance.web_icon,
            "badge": appearance.web_badge,
            "tag": appearance.web_tag,
            "require_interaction": True,
        },
        "link": link,
    }


def platform_payload(
    kind: str,
    title: str,
    body: str,
    target_path: str,
    *,
    related_item_id: str | None = None,
    appearance: PushAppearance | None = None,
) -> PlatformPayload:
    """
    Build the multicast payload for one notification.

    Data values are always strings (FCM rejects anything else).
    """
    appearance = appearance or PushAppearance()
    return PlatformPayload(
        title=title,
        body=body,
        data={
            "type": kind,
            "checklist_item_id": related_item_id or "",
            "url": target_path,
        },
        android=android_config(appearance),
        apns=apns_config(appearance),
        webpush=webpush_config(appearance, target_path),
    )


def build_notification_payload(
    notification: ScheduledNotification,
    appearance: PushAppearance | None = None,
) -> PlatformPayload:
    return platform_payload(
        notification.notification_kind,
        notification.title,
        notification.body,
        target_path(notification.notification_kind),
        related_item_id=notification.related_item_id,
        appearance=appearance,
    )
