"""
Alert delivery: log every alert, keep a short history, optionally POST to a webhook.
"""
import hashlib
import hmac
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone

import requests as http_requests

from config import Config

logger = logging.getLogger('errandbit.alerts')

SEVERITY_WARNING = 'warning'
SEVERITY_CRITICAL = 'critical'

# Max retries for webhook delivery
MAX_RETRIES = 3
# Backoff between attempts (seconds): 1, 2
BACKOFF_BASE = 1
HISTORY_SIZE = 100


@dataclass
class Alert:
    kind: str
    severity: str
    message: str
    detail: dict = field(default_factory=dict)
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "detail": self.detail,
            "raised_at": self.raised_at.isoformat(),
        }


def sign_payload(secret: str, body: str) -> str:
    return hmac.new(
        secret.encode() if secret else b'',
        body.encode(),
        hashlib.sha256,
    ).hexdigest()


class AlertDispatcher:
    def __init__(self, webhook_url=None, webhook_secret=None, max_workers=2):
        self.webhook_url = Config.ALERT_WEBHOOK_URL if webhook_url is None else webhook_url
        self.webhook_secret = Config.ALERT_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self._max_workers = max_workers
        self._pool = None
        self._history = []
        self._lock = threading.Lock()
        self._shutdown = threading.Event()

    def dispatch(self, alert: Alert):
        level = logging.ERROR if alert.severity == SEVERITY_CRITICAL else logging.WARNING
        logger.log(level, "ALERT [%s] %s", alert.kind, alert.message)
        with self._lock:
            self._history.append(alert)
            # Keep only the most recent alerts
            if len(self._history) > HISTORY_SIZE:
                self._history = self._history[-HISTORY_SIZE:]
        if self.webhook_url:
            with self._lock:
                if self._pool is None:
                    self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix='alert')
                pool = self._pool
            pool.submit(self._deliver, alert.to_dict())

    def recent(self, limit=HISTORY_SIZE) -> list:
        with self._lock:
            return list(reversed(self._history[-limit:]))

    def _deliver(self, payload: dict) -> bool:
        body = json.dumps(payload, default=str)
        headers = {
            'Content-Type': 'application/json',
            'X-Alert-Signature': f'sha256={sign_payload(self.webhook_secret, body)}',
        }
        for attempt in range(MAX_RETRIES):
            if self._shutdown.is_set():
                break
            try:
                resp = http_requests.post(self.webhook_url, data=body, headers=headers, timeout=10)
                if resp.status_code < 400:
                    return True
                logger.warning("Alert webhook returned %d (attempt %d/%d)",
                               resp.status_code, attempt + 1, MAX_RETRIES)
            except http_requests.RequestException as e:
                logger.warning("Alert webhook failed (attempt %d/%d): %s", attempt + 1, MAX_RETRIES, e)
            if attempt < MAX_RETRIES - 1:
                time.sleep(BACKOFF_BASE * (2 ** attempt))
        logger.error("Alert webhook delivery exhausted all retries")
        return False

    def shutdown(self, wait=True):
        self._shutdown.set()
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
        self._shutdown.clear()


_dispatcher = None


def get_alert_dispatcher() -> AlertDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = AlertDispatcher()
    return _dispatcher
