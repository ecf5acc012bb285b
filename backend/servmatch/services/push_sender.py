import logging
import os
from threading import Lock
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

PUSH_BATCH_SIZE = 100


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[idx:idx + size] for idx in range(0, len(items), size)]


class PushSender:
    """Best-effort push delivery through Firebase Cloud Messaging.

    Disabled unless FIREBASE_CREDENTIALS_PATH points at a service account file
    and the optional firebase-admin package is installed.
    """

    def __init__(self, credentials_path: Optional[str] = None):
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            credentials_path = (self._credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH", "")).strip()
            if not credentials_path:
                self._initialized = True
                logger.info("Push delivery disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except ImportError:
                self._initialized = True
                logger.warning("Push delivery disabled: install the 'push' extra for firebase-admin")
                return

            try:
                cred = credentials.Certificate(credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push delivery initialized")
            except Exception:
                logger.exception("Push delivery disabled: Firebase init failed")
            finally:
                self._initialized = True

    def send(self, tokens: List[str], title: str, body: str, data: Dict[str, str]) -> List[str]:
        """Push to every token; returns tokens the provider reported as invalid."""
        self._ensure_initialized()
        tokens = [token for token in tokens if token.strip()]
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None

        invalid: List[str] = []
        for batch_tokens in chunked(tokens, PUSH_BATCH_SIZE):
            try:
                message = self._messaging.MulticastMessage(
                    notification=self._messaging.Notification(title=title, body=body),
                    tokens=batch_tokens,
                    data=data,
                )
                batch = self._messaging.send_each_for_multicast(message)
            except Exception:
                logger.exception("Push batch of %d tokens failed", len(batch_tokens))
                continue
            for idx, response in enumerate(batch.responses):
                if response.success:
                    continue
                error_text = str(response.exception).lower() if response.exception else ""
                if "registration token" in error_text or "invalid argument" in error_text:
                    invalid.append(batch_tokens[idx])
        if invalid:
            logger.info("Push reported %d invalid tokens", len(invalid))
        return invalid
