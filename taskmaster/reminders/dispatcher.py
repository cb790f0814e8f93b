from typing import Any, Callable, Dict, Optional, Protocol
import json
import logging
import os
import uuid

from firebase_admin import messaging, credentials, initialize_app, _apps  # type: ignore

from .config import ReminderSettings, settings as reminder_settings
from .metrics import reminders_dispatch_success_total, reminders_dispatch_failed_total

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, user_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> bool: ...


def _ensure_firebase_initialized(settings: ReminderSettings) -> bool:
    if _apps:
        return True

    proj = settings.FCM_PROJECT_ID
    creds_json: Optional[str] = (
        settings.FCM_CREDENTIALS_JSON
        or os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON")
        or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    )
    options = {"projectId": proj} if proj else None

    if not creds_json or creds_json.strip() == "":
        if not proj:
            logger.warning("[FCM] No credentials provided - push notifications are disabled")
            return False
        try:
            initialize_app(options=options)
            logger.info("[FCM] Firebase app initialized (projectId only)")
            return True
        except Exception as e:
            logger.error("[FCM] Failed to initialize with project ID only: %r", e)
            return False

    try:
        if creds_json.strip().startswith("{"):
            cred = credentials.Certificate(json.loads(creds_json))
            source = "inline JSON"
        elif os.path.exists(creds_json):
            cred = credentials.Certificate(creds_json)
            source = "file"
        else:
            logger.error("[FCM] Credentials file %s does not exist", creds_json)
            return False
        initialize_app(cred, options=options)
        logger.info("[FCM] Firebase app initialized (%s)", source)
        return True
    except Exception as e:
        logger.error("[FCM] Failed to initialize Firebase: %r", e)
        return False


class FcmNotifier:
    """Notifier sending pushes through Firebase Cloud Messaging (APNs for iOS through FCM)"""

    def __init__(
        self,
        token_lookup: Callable[[str, str], Optional[str]],
        settings: ReminderSettings = reminder_settings,
    ):
        self.token_lookup = token_lookup
        self.settings = settings

    def send(self, user_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Push ``title``/``body`` to the user's latest device; failures are logged, never raised."""
        if not _ensure_firebase_initialized(self.settings):
            reminders_dispatch_failed_total.inc()
            return False

        token = self.token_lookup(str(user_id), self.settings.FCM_PLATFORM)
        if not token:
            logger.warning("[FCM] No FCM token found for user %s", user_id)
            reminders_dispatch_failed_total.inc()
            return False

        # Unique id keeps iOS from collapsing consecutive reminders
        notification_id = str(uuid.uuid4())
        message = messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data={**{k: str(v) for k, v in (data or {}).items()}, "notification_id": notification_id},
            apns=messaging.APNSConfig(
                headers={
                    "apns-push-type": "alert",
                    "apns-priority": "10",
                    "apns-collapse-id": notification_id,
                }
            ),
        )

        try:
            result = messaging.send(message, dry_run=False)
        except Exception as e:
            # Not raised: delivery jobs are fire-once
            logger.error("[FCM] Failed to send notification to user %s: %r", user_id, e)
            reminders_dispatch_failed_total.inc()
            return False

        logger.info("[FCM] Notification sent to user %s: %s", user_id, result)
        reminders_dispatch_success_total.inc()
        return True
