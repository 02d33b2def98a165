import logging
import threading

import firebase_admin
from firebase_admin import credentials, firestore

from .settings import settings

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_client = None


def get_db():
    """Return the shared Firestore client, initializing Firebase on first use.

    Only the firestore billing backend calls this; the in-memory backend never
    touches Firebase, so the service runs without credentials in that mode.
    """
    global _client
    with _lock:
        if _client is None:
            if not firebase_admin._apps:
                cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
                firebase_admin.initialize_app(cred)
                logger.info("Firebase initialized from %s", settings.FIREBASE_CREDENTIALS_PATH)
            _client = firestore.client()
        return _client
