from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import REGISTRY

from taskmaster.reminders import dispatcher
from taskmaster.reminders.config import ReminderSettings
from taskmaster.reminders.dispatcher import FcmNotifier, _ensure_firebase_initialized


def failed_count():
    return REGISTRY.get_sample_value("reminders_dispatch_failed_total") or 0.0


@pytest.fixture
def fcm_settings():
    return ReminderSettings(FCM_PROJECT_ID=None, FCM_CREDENTIALS_JSON=None, FCM_PLATFORM="ios")


@pytest.fixture
def firebase_ready():
    with patch.object(dispatcher, "_ensure_firebase_initialized", return_value=True):
        yield


def test_send_builds_fcm_message(firebase_ready, fcm_settings):
    lookup = MagicMock(return_value="device-token")
    notifier = FcmNotifier(lookup, fcm_settings)

    with patch.object(dispatcher.messaging, "send", return_value="projects/p/messages/1") as send:
        assert notifier.send("u1", "Stretch", "Five minutes", data={"reminderId": "r1"}) is True

    lookup.assert_called_once_with("u1", "ios")
    message = send.call_args.args[0]
    assert message.token == "device-token"
    assert message.notification.title == "Stretch"
    assert message.notification.body == "Five minutes"
    assert message.data["reminderId"] == "r1"
    assert message.apns.headers["apns-collapse-id"] == message.data["notification_id"]


def test_send_without_token_fails_quietly(firebase_ready, fcm_settings):
    before = failed_count()
    notifier = FcmNotifier(lambda user_id, platform: None, fcm_settings)

    with patch.object(dispatcher.messaging, "send") as send:
        assert notifier.send("u1", "Stretch", "Five minutes") is False

    send.assert_not_called()
    assert failed_count() == before + 1


def test_send_error_is_logged_not_raised(firebase_ready, fcm_settings, caplog):
    notifier = FcmNotifier(lambda user_id, platform: "device-token", fcm_settings)

    with patch.object(dispatcher.messaging, "send", side_effect=RuntimeError("unregistered")):
        assert notifier.send("u1", "Stretch", "Five minutes") is False
    assert "unregistered" in caplog.text


def test_send_skipped_when_firebase_unavailable(fcm_settings):
    lookup = MagicMock()
    with patch.object(dispatcher, "_ensure_firebase_initialized", return_value=False):
        assert FcmNotifier(lookup, fcm_settings).send("u1", "t", "b") is False
    lookup.assert_not_called()


@pytest.fixture
def no_firebase_app(monkeypatch):
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS_JSON", raising=False)
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
    with patch.object(dispatcher, "_apps", {}), patch.object(dispatcher, "initialize_app") as init:
        yield init


def test_init_without_credentials_is_disabled(no_firebase_app, fcm_settings):
    assert _ensure_firebase_initialized(fcm_settings) is False
    no_firebase_app.assert_not_called()


def test_init_with_project_only(no_firebase_app):
    settings = ReminderSettings(FCM_PROJECT_ID="taskmaster-dev", FCM_CREDENTIALS_JSON=None)
    assert _ensure_firebase_initialized(settings) is True
    no_firebase_app.assert_called_once_with(options={"projectId": "taskmaster-dev"})


def test_init_with_missing_credentials_file(no_firebase_app, tmp_path):
    settings = ReminderSettings(FCM_CREDENTIALS_JSON=str(tmp_path / "missing.json"))
    assert _ensure_firebase_initialized(settings) is False
    no_firebase_app.assert_not_called()


def test_init_skipped_when_app_exists():
    with patch.object(dispatcher, "_apps", {"[DEFAULT]": object()}):
        assert _ensure_firebase_initialized(ReminderSettings()) is True
