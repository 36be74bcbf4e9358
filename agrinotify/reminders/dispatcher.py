from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import json
import logging
import os
import threading

import firebase_admin
from firebase_admin import messaging, credentials, exceptions as fb_exceptions

from .config import settings
from .exceptions import EngineError

logger = logging.getLogger(__name__)


class DispatchErrorKind(str, Enum):
    ENDPOINT_INVALID = "EndpointInvalid"
    TRANSIENT_NETWORK = "TransientNetwork"
    UNAUTHORIZED = "Unauthorized"
    UNKNOWN = "Unknown"


# Gateway error codes that prove the token is dead
_INVALID_TOKEN_CODES = {
    "invalid-token",
    "unregistered",
    "messaging/registration-token-not-registered",
    "messaging/invalid-registration-token",
    "registration-token-not-registered",
    "invalid-registration-token",
    "sender-id-mismatch",
}
_UNAUTHORIZED_CODES = {"unauthenticated", "permission-denied", "third-party-auth-error", "not-initialized"}
_TRANSIENT_CODES = {"unavailable", "deadline-exceeded", "internal", "quota-exceeded", "resource-exhausted"}

_init_lock = threading.Lock()


def _names_registration_token(exc: Exception) -> bool:
    # INVALID_ARGUMENT is also returned for malformed or oversized messages
    texts = [str(exc), str(getattr(exc, "cause", "") or "")]
    return any("registration token" in t.lower() or "registration-token" in t.lower() for t in texts)


class DispatchError(EngineError):
    """Push gateway failure classified for the caller."""

    def __init__(self, kind: DispatchErrorKind, code: str = "", message: str = ""):
        super().__init__(message or code or kind.value)
        self.kind = kind
        self.code = code
        self.message = message

    @property
    def endpoint_invalid(self) -> bool:
        return self.kind == DispatchErrorKind.ENDPOINT_INVALID

    @classmethod
    def from_code(cls, code: str, message: str = "") -> "DispatchError":
        normalized = (code or "").strip().lower()
        if normalized in _INVALID_TOKEN_CODES:
            kind = DispatchErrorKind.ENDPOINT_INVALID
        elif normalized in _UNAUTHORIZED_CODES:
            kind = DispatchErrorKind.UNAUTHORIZED
        elif normalized in _TRANSIENT_CODES:
            kind = DispatchErrorKind.TRANSIENT_NETWORK
        else:
            kind = DispatchErrorKind.UNKNOWN
        return cls(kind, code=code, message=message)

    @classmethod
    def from_exception(cls, exc: Exception) -> "DispatchError":
        if isinstance(exc, DispatchError):
            return exc
        code = str(getattr(exc, "code", "") or "")
        if isinstance(exc, (messaging.UnregisteredError, messaging.SenderIdMismatchError)):
            kind = DispatchErrorKind.ENDPOINT_INVALID
        elif isinstance(exc, fb_exceptions.InvalidArgumentError):
            if not _names_registration_token(exc):
                return cls(DispatchErrorKind.UNKNOWN, code=code, message=str(exc))
            kind = DispatchErrorKind.ENDPOINT_INVALID
        elif isinstance(exc, (fb_exceptions.UnauthenticatedError, fb_exceptions.PermissionDeniedError, messaging.ThirdPartyAuthError)):
            kind = DispatchErrorKind.UNAUTHORIZED
        elif isinstance(exc, (
            fb_exceptions.UnavailableError,
            fb_exceptions.DeadlineExceededError,
            fb_exceptions.InternalError,
            fb_exceptions.ResourceExhaustedError,
            messaging.QuotaExceededError,
            ConnectionError,
            TimeoutError,
        )):
            kind = DispatchErrorKind.TRANSIENT_NETWORK
        else:
            return cls.from_code(code, message=str(exc))
        return cls(kind, code=code, message=str(exc))


@dataclass
class NotificationPayload:
    """Gateway-agnostic notification content"""
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)
    channel_id: str = "task_reminders"
    category: Optional[str] = None


def _firebase_app_exists() -> bool:
    try:
        firebase_admin.get_app()
        return True
    except ValueError:
        return False


def _ensure_firebase_initialized() -> bool:
    if _firebase_app_exists():
        return True

    # send_many calls this from several workers at once on a cold start
    with _init_lock:
        if _firebase_app_exists():
            return True
        return _initialize_firebase()


def _initialize_firebase() -> bool:
    proj = settings.FCM_PROJECT_ID
    cfg_val = settings.FCM_CREDENTIALS_JSON
    env_gac_json = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON")
    env_gac = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")

    options = {"httpTimeout": settings.FCM_HTTP_TIMEOUT_SECONDS}
    if proj:
        options["projectId"] = proj

    creds_json: Optional[str] = cfg_val or env_gac_json or env_gac
    logger.info(
        f"🔍 [FCM] Initializing Firebase | project_id={proj} creds_set={bool(creds_json)}"
    )

    try:
        if creds_json and creds_json.strip().startswith("{"):
            firebase_admin.initialize_app(credentials.Certificate(json.loads(creds_json)), options=options)
        elif creds_json and os.path.exists(creds_json):
            firebase_admin.initialize_app(credentials.Certificate(creds_json), options=options)
        elif proj:
            firebase_admin.initialize_app(options=options)
        else:
            logger.warning("⚠️  [FCM] No credentials provided - push notifications are disabled")
            return False
    except ValueError as e:
        if "already exists" in str(e):
            # Initialized elsewhere in the process
            logger.info("ℹ️  [FCM] Firebase app already initialized")
            return True
        logger.error(f"❌ [FCM] Failed to initialize Firebase: {e!r}")
        return False
    except OSError as e:
        logger.error(f"❌ [FCM] Failed to initialize Firebase: {e!r}")
        return False
    logger.info("✅ [FCM] Firebase app initialized")
    return True


def build_fcm_message(token: str, payload: NotificationPayload) -> messaging.Message:
    return messaging.Message(
        token=token,
        notification=messaging.Notification(title=payload.title, body=payload.body),
        data={k: str(v) for k, v in payload.data.items()},
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(
                channel_id=payload.channel_id,
                sound="default",
                color="#4CAF50",
            ),
        ),
        apns=messaging.APNSConfig(
            headers={"apns-push-type": "alert", "apns-priority": "10"},
            payload=messaging.APNSPayload(
                aps=messaging.Aps(sound="default", badge=1, category=payload.category),
            ),
        ),
    )


def _fcm_send(token: str, payload: NotificationPayload) -> str:
    if not _ensure_firebase_initialized():
        raise DispatchError(DispatchErrorKind.UNAUTHORIZED, code="not-initialized", message="Firebase not initialized")
    return messaging.send(build_fcm_message(token, payload), dry_run=False)


class DispatchClient:
    """Translation layer between the engine and the push gateway.

    ``transport`` performs the actual call and returns a message id; it
    defaults to FCM. Any exception it raises is classified into a
    DispatchError.
    """

    def __init__(self, transport: Optional[Callable[[str, NotificationPayload], str]] = None):
        self.transport = transport or _fcm_send

    def send(self, token: str, payload: NotificationPayload) -> str:
        try:
            message_id = self.transport(token, payload)
        except DispatchError as err:
            self._log_failure(token, err)
            raise
        except Exception as e:
            err = DispatchError.from_exception(e)
            self._log_failure(token, err)
            raise err from e
        logger.info(f"✅ [FCM] Notification sent | token={token[:12]}... id={message_id}")
        return message_id

    @staticmethod
    def _log_failure(token: str, err: DispatchError) -> None:
        logger.warning(
            f"❌ [FCM] Send failed | token={token[:12]}... kind={err.kind.value} code={err.code!r}: {err}"
        )

    def send_many(
        self,
        jobs: Sequence[Tuple[Any, str, NotificationPayload]],
        max_workers: int = 4,
    ) -> List["DeliveryOutcome"]:
        """Send independent (key, token, payload) jobs in parallel.

        Results come back in job order; a failing job never affects the others.
        """
        if not jobs:
            return []

        def _run(job: Tuple[Any, str, NotificationPayload]) -> DeliveryOutcome:
            key, token, payload = job
            try:
                return DeliveryOutcome(key=key, message_id=self.send(token, payload))
            except DispatchError as err:
                return DeliveryOutcome(key=key, error=err)

        if len(jobs) == 1 or max_workers <= 1:
            return [_run(job) for job in jobs]
        with ThreadPoolExecutor(max_workers=min(max_workers, len(jobs))) as pool:
            return list(pool.map(_run, jobs))


@dataclass
class DeliveryOutcome:
    key: Any
    message_id: Optional[str] = None
    error: Optional[DispatchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None
