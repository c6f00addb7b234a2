# app/infra/fcm_transport.py
"""
Firebase Cloud Messaging transport (firebase-admin).

One ``send_multicast()`` call addresses many registration tokens with one
payload.  The SDK is synchronous, so each batch runs in a worker thread.

Error mapping
~~~~~~~~~~~~~
- whole call fails (auth, network, malformed message) -> ``TransportFailure``
- single token unregistered / malformed / wrong sender -> ``TokenResult(invalid_token=True)``
- single token transient (quota, unavailable, internal) -> ``TokenResult(invalid_token=False)``
"""
from __future__ import annotations

import asyncio
import json
from typing import Sequence

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin import exceptions as firebase_exceptions

from app.core.dispatch.domain import MulticastResult, TokenResult
from app.core.dispatch.errors import ConfigurationError, EndpointInvalid, TransportFailure
from app.core.dispatch.payloads import PlatformPayload
from app.infra.logging_config import get_logger, mask_token

logger = get_logger(__name__)

# FCM limit for one multicast request
MAX_TOKENS_PER_MULTICAST = 500

# Per-token errors that mean the token will never work again
_INVALID_TOKEN_ERRORS: tuple[type[Exception], ...] = (
    messaging.UnregisteredError,
    messaging.SenderIdMismatchError,
    firebase_exceptions.InvalidArgumentError,
)


def classify_token_error(token: str, exc: Exception | None) -> EndpointInvalid | None:
    """Return ``EndpointInvalid`` when ``exc`` rejects the token permanently."""
    if exc is not None and isinstance(exc, _INVALID_TOKEN_ERRORS):
        code = getattr(exc, "code", None) or exc.__class__.__name__
        return EndpointInvalid(token, f"{code}: {exc}")
    return None


def build_multicast_message(
    tokens: Sequence[str], payload: PlatformPayload
) -> messaging.MulticastMessage:
    """Translate a ``PlatformPayload`` into an FCM ``MulticastMessage``."""
    android_notification = payload.android.get("notification", {})
    aps = payload.apns.get("aps", {})
    web_notification = payload.webpush.get("notification", {})
    link = payload.webpush.get("link")

    return messaging.MulticastMessage(
        tokens=list(tokens),
        notification=messaging.Notification(title=payload.title, body=payload.body),
        data=dict(payload.data),
        android=messaging.AndroidConfig(
            priority=payload.android.get("priority", "high"),
            notification=messaging.AndroidNotification(
                icon=android_notification.get("icon"),
                color=android_notification.get("color"),
                channel_id=android_notification.get("channel_id"),
            ),
        ),
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(
                aps=messaging.Aps(
                    badge=aps.get("badge"),
                    sound=aps.get("sound"),
                    category=aps.get("category"),
                ),
            ),
        ),
        webpush=messaging.WebpushConfig(
            notification=messaging.WebpushNotification(
                icon=web_notification.get("icon"),
                badge=web_notification.get("badge"),
                tag=web_notification.get("tag"),
                require_interaction=web_notification.get("require_interaction"),
            ),
            # FCM only accepts absolute https links here
            fcm_options=(
                messaging.WebpushFCMOptions(link=link)
                if link and link.startswith("https://")
                else None
            ),
        ),
    )


def _map_batch_response(tokens: Sequence[str], response) -> MulticastResult:
    per_token: list[TokenResult] = []
    for token, send_response in zip(tokens, response.responses):
        if send_response.success:
            per_token.append(TokenResult(token=token, success=True))
            continue

        exc = send_response.exception
        invalid = classify_token_error(token, exc)
        per_token.append(
            TokenResult(
                token=token,
                success=False,
                error=invalid.detail if invalid else f"{exc.__class__.__name__}: {exc}",
                invalid_token=invalid is not None,
            )
        )
    return MulticastResult(
        success_count=response.success_count,
        failure_count=response.failure_count,
        per_token=per_token,
    )


class FcmPushTransport:
    """
    Push transport backed by a named firebase-admin app.

    The Firebase app is created lazily on first use; ``ensure_ready()``
    raises ``ConfigurationError`` when no usable service account is set.
    """

    def __init__(
        self,
        *,
        credentials_json: str | None = None,
        credentials_file: str | None = None,
        project_id: str | None = None,
        app_name: str = "push_dispatch",
        dry_run: bool = False,
    ):
        self._credentials_json = credentials_json
        self._credentials_file = credentials_file
        self._project_id = project_id
        self._app_name = app_name
        self._dry_run = dry_run
        self._app: firebase_admin.App | None = None

    @classmethod
    def from_settings(cls, s) -> "FcmPushTransport":
        return cls(
            credentials_json=s.firebase_credentials_json,
            credentials_file=s.firebase_credentials_file,
            project_id=s.firebase_project_id,
            app_name=s.firebase_app_name,
        )

    def is_configured(self) -> bool:
        return bool(self._credentials_json or self._credentials_file)

    def ensure_ready(self) -> None:
        self._get_app()

    def _get_app(self) -> firebase_admin.App:
        if self._app is not None:
            return self._app

        if not self.is_configured():
            raise ConfigurationError(
                "Firebase credentials missing (set FIREBASE_CREDENTIALS_FILE or FIREBASE_CREDENTIALS_JSON)"
            )

        try:
            self._app = firebase_admin.get_app(self._app_name)
            return self._app
        except ValueError:
            pass

        try:
            if self._credentials_json:
                cred = credentials.Certificate(json.loads(self._credentials_json))
            else:
                cred = credentials.Certificate(self._credentials_file)
            options = {"projectId": self._project_id} if self._project_id else None
            self._app = firebase_admin.initialize_app(cred, options=options, name=self._app_name)
        except (ValueError, OSError) as exc:
            raise ConfigurationError(f"Failed to initialize Firebase: {exc}") from exc

        logger.info(f"Firebase app '{self._app_name}' initialized")
        return self._app

    async def send_multicast(
        self, tokens: Sequence[str], payload: PlatformPayload
    ) -> MulticastResult:
        """
        Send ``payload`` to every token. Results keep the order of ``tokens``.

        Token lists above the FCM cap go out in chunks. A chunk that fails as
        a whole reports each of its tokens as failed; accepted chunks are kept.

        Raises:
            TransportFailure: no chunk was accepted (the first failure is re-raised).
            ConfigurationError: credentials missing or unusable.
        """
        app = self._get_app()
        tokens = list(tokens)
        merged = MulticastResult(success_count=0, failure_count=0)
        first_failure: TransportFailure | None = None
        accepted_chunks = 0

        for start in range(0, len(tokens), MAX_TOKENS_PER_MULTICAST):
            chunk = tokens[start:start + MAX_TOKENS_PER_MULTICAST]
            try:
                result = await self._send_chunk(app, chunk, payload)
                accepted_chunks += 1
            except TransportFailure as exc:
                first_failure = first_failure or exc
                result = MulticastResult(
                    success_count=0,
                    failure_count=len(chunk),
                    per_token=[TokenResult(token=t, success=False, error=exc.detail) for t in chunk],
                )
            merged.success_count += result.success_count
            merged.failure_count += result.failure_count
            merged.per_token.extend(result.per_token)

        if first_failure is not None:
            if accepted_chunks == 0:
                raise first_failure
            logger.warning(
                f"FCM multicast partially failed: {merged.success_count}/{len(tokens)} accepted, "
                f"failed chunk(s) counted per token: {first_failure.detail}"
            )
        return merged

    async def _send_chunk(
        self, app: firebase_admin.App, tokens: list[str], payload: PlatformPayload
    ) -> MulticastResult:
        try:
            message = build_multicast_message(tokens, payload)
            response = await asyncio.to_thread(
                messaging.send_each_for_multicast, message, self._dry_run, app,
            )
        except firebase_exceptions.FirebaseError as exc:
            logger.warning(
                f"FCM multicast failed for {len(tokens)} token(s) "
                f"(first={mask_token(tokens[0]) if tokens else '-'}): {exc.code}: {exc}"
            )
            raise TransportFailure(f"FCM error: {exc}", code=str(exc.code)) from exc
        except (ValueError, TypeError) as exc:
            raise TransportFailure(f"Invalid FCM message: {exc}", code="invalid_message") from exc
        except OSError as exc:
            raise TransportFailure(f"FCM network error: {exc}", code="network") from exc

        return _map_batch_response(tokens, response)
