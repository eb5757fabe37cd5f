import logging
from threading import Lock
from typing import Any, Dict, List, Optional

from cleanmatch.config import FIREBASE_CREDENTIALS_PATH

logger = logging.getLogger(__name__)

# FCM rejects multicast batches above this size.
MULTICAST_BATCH_SIZE = 500

STALE_TOKEN_MARKERS = ("registration token", "invalid argument", "not found")


def _stale_tokens(tokens: List[str], responses: List[Any]) -> List[str]:
    stale: List[str] = []
    for token, response in zip(tokens, responses):
        if response.success:
            continue
        error_text = str(response.exception).lower() if response.exception else ""
        if any(marker in error_text for marker in STALE_TOKEN_MARKERS):
            stale.append(token)
    return stale


class PushSender:
    """Firebase Cloud Messaging fan-out for device tokens.

    Firebase is loaded lazily on first send. Without credentials, or without the
    ``push`` extra installed, sending is a no-op and notifications stay in-app.
    """

    def __init__(self, credentials_path: str = FIREBASE_CREDENTIALS_PATH):
        self.credentials_path = credentials_path
        self._lock = Lock()
        self._loaded = False
        self._messaging: Optional[Any] = None

    @property
    def enabled(self) -> bool:
        return self._load_messaging() is not None

    def _load_messaging(self) -> Optional[Any]:
        if self._loaded:
            return self._messaging
        with self._lock:
            if self._loaded:
                return self._messaging
            self._loaded = True
            if not self.credentials_path:
                logger.info("Push delivery off: FIREBASE_CREDENTIALS_PATH not set")
                return None
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except ImportError:
                logger.exception("Push delivery off: firebase-admin is not installed")
                return None
            try:
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(self.credentials_path))
            except Exception:
                logger.exception("Push delivery off: Firebase init failed for %s", self.credentials_path)
                return None
            self._messaging = messaging
            logger.info("Push delivery ready")
            return self._messaging

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[str]:
        """Send to every token; returns the tokens Firebase reported as stale."""
        if not tokens:
            return []
        messaging = self._load_messaging()
        if messaging is None:
            return []
        stale: List[str] = []
        for start in range(0, len(tokens), MULTICAST_BATCH_SIZE):
            chunk = tokens[start : start + MULTICAST_BATCH_SIZE]
            message = messaging.MulticastMessage(
                notification=messaging.Notification(title=title, body=body),
                tokens=chunk,
                data=data,
            )
            try:
                batch = messaging.send_each_for_multicast(message)
            except Exception:
                logger.exception("Push batch failed: tokens=%s kind=%s", len(chunk), data.get("kind"))
                continue
            stale.extend(_stale_tokens(chunk, batch.responses))
        if stale:
            logger.info("Dropping %s stale device tokens", len(stale))
        return stale


push_sender = PushSender()
