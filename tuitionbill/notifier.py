"""Notifier collaborators. Delivery is fire-and-forget from the engine's view."""

import json
from typing import Any, Dict

import requests

from tuitionbill.config import cfg
from tuitionbill.log import get_logger

logger = get_logger(__name__)


class NotifierError(Exception):
    pass


class Notifier:
    def send(self, event_type: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes notifications to the log; the default when no webhook is configured."""

    def send(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info("notify %s %s", event_type, json.dumps(payload, ensure_ascii=False, sort_keys=True))


class WebhookNotifier(Notifier):
    def __init__(self, url: str, timeout: int = 10, session: requests.Session = None):
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    def send(self, event_type: str, payload: Dict[str, Any]) -> None:
        body = {"event": event_type, "data": payload}
        try:
            resp = self.http.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotifierError(f"webhook request failed: {e}") from e
        if resp.status_code >= 400:
            raise NotifierError(f"webhook returned {resp.status_code}: {resp.text[:200]}")


def build_notifier() -> Notifier:
    url = str(cfg.get("notifier.webhook_url", "") or "").strip()
    if url:
        return WebhookNotifier(url, timeout=int(cfg.get("notifier.timeout_seconds", 10) or 10))
    return LogNotifier()
