import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

INVALID_TOKEN_MARKERS = ("registration token", "invalid argument", "not registered")


def _load_firebase_messaging(credentials_path: str) -> Optional[Any]:
    """Initialise the default Firebase app and return its messaging module, or None."""
    if not credentials_path:
        logger.info("push_disabled reason=no_credentials_path")
        return None
    if not Path(credentials_path).is_file():
        logger.warning("push_disabled reason=credentials_missing path=%s", credentials_path)
        return None

    import firebase_admin
    from firebase_admin import credentials, messaging

    try:
        if not firebase_admin._apps:  # pylint: disable=protected-access
            firebase_admin.initialize_app(credentials.Certificate(credentials_path))
    except (ValueError, OSError):
        logger.exception("push_disabled reason=firebase_init_failed")
        return None
    logger.info("push_enabled credentials_path=%s", credentials_path)
    return messaging


class PushSender:
    """Firebase Cloud Messaging delivery; a no-op until credentials are configured."""

    def __init__(self, credentials_path: Optional[str] = None):
        self._credentials_path = credentials_path
        self._init_lock = Lock()
        self._loaded = False
        self._messaging: Optional[Any] = None

    def _client(self) -> Optional[Any]:
        with self._init_lock:
            if not self._loaded:
                path = self._credentials_path
                if path is None:
                    path = os.getenv("FIREBASE_CREDENTIALS_PATH", "")
                self._messaging = _load_firebase_messaging(path.strip())
                self._loaded = True
        return self._messaging

    @property
    def enabled(self) -> bool:
        return self._client() is not None

    def send(self, tokens: List[str], title: str, body: str, data: Dict[str, str]) -> List[str]:
        """Deliver one message to every token; returns the tokens Firebase reports as dead."""
        messaging = self._client()
        if messaging is None or not tokens:
            return []
        batch = messaging.send_each_for_multicast(
            messaging.MulticastMessage(
                tokens=tokens,
                data=data,
                notification=messaging.Notification(title=title, body=body),
            )
        )
        dead = [
            token
            for token, response in zip(tokens, batch.responses)
            if not response.success
            and any(marker in str(response.exception or "").lower() for marker in INVALID_TOKEN_MARKERS)
        ]
        logger.info("push_sent tokens=%d failed=%d dead=%d", len(tokens), batch.failure_count, len(dead))
        return dead


push_sender = PushSender()
