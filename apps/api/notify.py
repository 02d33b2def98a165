from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from .settings import settings

logger = logging.getLogger(__name__)


def send_alert(event: str, payload: Dict[str, Any], *, url: Optional[str] = None) -> bool:
    """POST a JSON alert to ``ALERT_WEBHOOK_URL``; False when unset or delivery failed."""
    target = url if url is not None else settings.ALERT_WEBHOOK_URL
    if not target:
        return False
    body = {
        "event": event,
        "service": "billing",
        "sent_at": datetime.now(timezone.utc).isoformat(),
        **payload,
    }
    try:
        resp = httpx.post(target, json=body, timeout=5.0)
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Alert %s to %s failed: %s", event, target, exc)
        return False
    return True
