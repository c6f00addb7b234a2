# tests/test_fcm_transport.py
"""
Tests for the FCM transport (app/infra/fcm_transport.py):
- per-token error classification
- MulticastMessage construction
- batch response mapping and chunking
- whole-call failure mapping
- lazy Firebase app initialization
"""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from app.core.dispatch.errors import ConfigurationError, TransportFailure
from app.core.dispatch.payloads import PushAppearance, platform_payload
from app.infra.fcm_transport import (
    MAX_TOKENS_PER_MULTICAST,
    FcmPushTransport,
    _map_batch_response,
    build_multicast_message,
    classify_token_error,
)


def _payload(**kwargs):
    return platform_payload(
        "checklist_reminder", "Checklist", "Two items left", "/dashboard/checklist",
        related_item_id="item-1", **kwargs,
    )


def _batch_response(results: list[SimpleNamespace]) -> SimpleNamespace:
    success = sum(1 for r in results if r.success)
    return SimpleNamespace(
        responses=results,
        success_count=success,
        failure_count=len(results) - success,
    )


def _ok():
    return SimpleNamespace(success=True, exception=None)


def _err(exc):
    return SimpleNamespace(success=False, exception=exc)


def _ready_transport(**kwargs) -> FcmPushTransport:
    transport = FcmPushTransport(credentials_json="{}", **kwargs)
    transport._app = MagicMock(name="firebase_app")
    return transport


class TestClassifyTokenError:
    @pytest.mark.parametrize(
        "exc",
        [
            messaging.UnregisteredError("Requested entity was not found."),
            messaging.SenderIdMismatchError("SenderId mismatch"),
            firebase_exceptions.InvalidArgumentError("The registration token is not a valid FCM registration token"),
        ],
    )
    def test_permanent_errors_are_invalid(self, exc):
        invalid = classify_token_error("tok", exc)

        assert invalid is not None
        assert invalid.token == "tok"

    @pytest.mark.parametrize(
        "exc",
        [
            messaging.QuotaExceededError("quota"),
            firebase_exceptions.UnavailableError("unavailable"),
            firebase_exceptions.InternalError("internal"),
            None,
        ],
    )
    def test_transient_errors_are_not_invalid(self, exc):
        assert classify_token_error("tok", exc) is None


class TestBuildMulticastMessage:
    def test_maps_payload_blocks(self):
        message = build_multicast_message(["t1", "t2"], _payload())

        assert message.tokens == ["t1", "t2"]
        assert message.notification.title == "Checklist"
        assert message.notification.body == "Two items left"
        assert message.data == {
            "type": "checklist_reminder",
            "checklist_item_id": "item-1",
            "url": "/dashboard/checklist",
        }
        assert message.android.priority == "high"
        assert message.android.notification.icon == "notification_icon"
        assert message.android.notification.color == "#7D0820"
        assert message.android.notification.channel_id == "pam_reminders"
        assert message.apns.payload.aps.badge == 1
        assert message.apns.payload.aps.sound == "default"
        assert message.apns.payload.aps.category == "PAM_REMINDER"
        assert message.webpush.notification.icon == "/icons/pwa-192x192.png"
        assert message.webpush.notification.badge == "/icons/pwa-96x96.png"
        assert message.webpush.notification.tag == "pam-reminder"
        assert message.webpush.notification.require_interaction is True

    def test_relative_web_link_is_not_sent(self):
        message = build_multicast_message(["t1"], _payload())

        assert message.webpush.fcm_options is None

    def test_https_web_link_is_sent(self):
        appearance = PushAppearance(web_base_url="https://app.example.com")
        message = build_multicast_message(["t1"], _payload(appearance=appearance))

        assert message.webpush.fcm_options.link == "https://app.example.com/dashboard/checklist"


class TestMapBatchResponse:
    def test_keeps_token_order_and_classifies(self):
        tokens = ["good", "dead", "busy"]
        response = _batch_response([
            _ok(),
            _err(messaging.UnregisteredError("gone")),
            _err(messaging.QuotaExceededError("slow down")),
        ])

        result = _map_batch_response(tokens, response)

        assert result.success_count == 1
        assert result.failure_count == 2
        assert [r.token for r in result.per_token] == tokens
        assert [r.success for r in result.per_token] == [True, False, False]
        assert [r.invalid_token for r in result.per_token] == [False, True, False]
        assert "QuotaExceededError" in result.per_token[2].error


class TestSendMulticast:
    @pytest.mark.asyncio
    async def test_single_request(self):
        transport = _ready_transport()
        response = _batch_response([_ok(), _err(messaging.UnregisteredError("gone"))])

        with patch("app.infra.fcm_transport.messaging.send_each_for_multicast", return_value=response) as send:
            result = await transport.send_multicast(["t1", "t2"], _payload())

        send.assert_called_once()
        message, dry_run, app = send.call_args[0]
        assert message.tokens == ["t1", "t2"]
        assert dry_run is False
        assert app is transport._app
        assert result.success_count == 1
        assert result.per_token[1].invalid_token is True

    @pytest.mark.asyncio
    async def test_chunks_large_token_lists(self):
        transport = _ready_transport()
        tokens = [f"tok-{i}" for i in range(MAX_TOKENS_PER_MULTICAST * 2 + 200)]

        def _send(message, dry_run, app):
            return _batch_response([_ok() for _ in message.tokens])

        with patch("app.infra.fcm_transport.messaging.send_each_for_multicast", side_effect=_send) as send:
            result = await transport.send_multicast(tokens, _payload())

        assert [len(c[0][0].tokens) for c in send.call_args_list] == [500, 500, 200]
        assert result.success_count == len(tokens)
        assert [r.token for r in result.per_token] == tokens

    @pytest.mark.asyncio
    async def test_failed_chunk_keeps_earlier_successes(self):
        transport = _ready_transport()
        tokens = [f"tok-{i}" for i in range(MAX_TOKENS_PER_MULTICAST + 1)]

        with patch(
            "app.infra.fcm_transport.messaging.send_each_for_multicast",
            side_effect=[
                _batch_response([_ok() for _ in range(MAX_TOKENS_PER_MULTICAST)]),
                firebase_exceptions.UnavailableError("backend down"),
            ],
        ):
            result = await transport.send_multicast(tokens, _payload())

        assert result.success_count == 500
        assert result.failure_count == 1
        assert [r.token for r in result.per_token] == tokens
        last = result.per_token[-1]
        assert last.success is False
        assert last.invalid_token is False
        assert "backend down" in last.error

    @pytest.mark.asyncio
    async def test_every_chunk_failing_raises(self):
        transport = _ready_transport()
        tokens = [f"tok-{i}" for i in range(MAX_TOKENS_PER_MULTICAST + 1)]

        with patch(
            "app.infra.fcm_transport.messaging.send_each_for_multicast",
            side_effect=firebase_exceptions.UnavailableError("backend down"),
        ) as send:
            with pytest.raises(TransportFailure) as exc_info:
                await transport.send_multicast(tokens, _payload())

        assert send.call_count == 2
        assert exc_info.value.code == "UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_firebase_error_becomes_transport_failure(self):
        transport = _ready_transport()

        with patch(
            "app.infra.fcm_transport.messaging.send_each_for_multicast",
            side_effect=firebase_exceptions.UnavailableError("backend down"),
        ):
            with pytest.raises(TransportFailure) as exc_info:
                await transport.send_multicast(["t1"], _payload())

        assert exc_info.value.code == "UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_network_error_becomes_transport_failure(self):
        transport = _ready_transport()

        with patch(
            "app.infra.fcm_transport.messaging.send_each_for_multicast",
            side_effect=ConnectionResetError("reset by peer"),
        ):
            with pytest.raises(TransportFailure) as exc_info:
                await transport.send_multicast(["t1"], _payload())

        assert exc_info.value.code == "network"


class TestFirebaseApp:
    def test_missing_credentials(self):
        transport = FcmPushTransport(app_name="test_missing_credentials")

        assert transport.is_configured() is False
        with pytest.raises(ConfigurationError):
            transport.ensure_ready()

    def test_malformed_credentials_json(self):
        transport = FcmPushTransport(credentials_json="not json", app_name="test_malformed_json")

        with pytest.raises(ConfigurationError):
            transport.ensure_ready()

    def test_missing_credentials_file(self):
        transport = FcmPushTransport(
            credentials_file="/nonexistent/service-account.json",
            app_name="test_missing_file",
        )

        with pytest.raises(ConfigurationError):
            transport.ensure_ready()

    def test_reuses_existing_app(self):
        existing = MagicMock(name="existing_app")
        transport = FcmPushTransport(credentials_json="{}", app_name="test_existing")

        with patch("app.infra.fcm_transport.firebase_admin.get_app", return_value=existing) as get_app:
            transport.ensure_ready()
            transport.ensure_ready()

        assert transport._app is existing
        get_app.assert_called_once_with("test_existing")

    def test_initializes_app_once(self):
        created = MagicMock(name="created_app")
        transport = FcmPushTransport(
            credentials_json='{"type": "service_account"}',
            project_id="demo-project",
            app_name="test_initialize",
        )

        with patch("app.infra.fcm_transport.firebase_admin.get_app", side_effect=ValueError("no app")), \
                patch("app.infra.fcm_transport.credentials.Certificate") as certificate, \
                patch("app.infra.fcm_transport.firebase_admin.initialize_app", return_value=created) as init:
            transport.ensure_ready()
            transport.ensure_ready()

        certificate.assert_called_once_with({"type": "service_account"})
        init.assert_called_once_with(
            certificate.return_value, options={"projectId": "demo-project"}, name="test_initialize",
        )
        assert transport._app is created

    def test_from_settings(self):
        s = SimpleNamespace(
            firebase_credentials_json=None,
            firebase_credentials_file="/etc/fcm.json",
            firebase_project_id="p",
            firebase_app_name="named",
        )

        transport = FcmPushTransport.from_settings(s)

        assert transport.is_configured() is True
