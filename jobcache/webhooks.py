"""Webhook notifications for job lifecycle events."""

from typing import Any, Dict, Iterable, List, Optional

import requests

from .client import CacheClient
from .errors import CircuitOpenError, InvalidKeyError
from .logger import get_logger
from .retry import CircuitBreaker, RetryError, exponential_backoff
from .schema import utc_now

logger = get_logger()

ALL_EVENTS = "*"
DELIVERY_ERRORS = (RetryError, requests.exceptions.RequestException)


@exponential_backoff(
    max_retries=2,
    base_delay=0.5,
    max_delay=2.0,
    exceptions=(requests.exceptions.Timeout, requests.exceptions.ConnectionError),
)
def _post_with_retry(url: str, body: Dict[str, Any], timeout: float):
    """POST with automatic retry on transient errors."""
    return requests.post(url, json=body, timeout=timeout)


class WebhookNotifier:
    """
    Delivers JSON events to URLs registered per job.

    Registrations live in ``webhooks:<job_id>`` as url -> list of events and
    expire with the job record.
    """

    def __init__(self, client: CacheClient, breaker: CircuitBreaker, timeout: float = 5):
        self.client = client
        self.breaker = breaker
        self.timeout = timeout

    def _key(self, job_id: str) -> str:
        return self.client.keys.build("webhooks", job_id)

    def register(self, job_id: str, url: str, events: Optional[Iterable[str]] = None) -> bool:
        """
        Subscribe ``url`` to ``events`` for one job (default: every event).

        Returns:
            True if the registration was stored
        """
        if not url.startswith(("http://", "https://")):
            logger.error("Rejected webhook URL", job_id=job_id, url=url)
            return False
        try:
            key = self._key(job_id)
        except InvalidKeyError as e:
            logger.error("Invalid job id", job_id=repr(job_id), error=str(e))
            return False

        subscribed = sorted(set(events)) if events else [ALL_EVENTS]
        ok = self.client.hash_set(key, url, subscribed, ttl=self.client.settings.ttl.jobs)
        if ok:
            logger.info("Webhook registered", job_id=job_id, url=url, events=subscribed)
        return ok

    def unregister(self, job_id: str, url: str) -> bool:
        try:
            key = self._key(job_id)
        except InvalidKeyError:
            return False
        return self.client.hash_delete(key, url)

    def registrations(self, job_id: str) -> Dict[str, List[str]]:
        try:
            key = self._key(job_id)
        except InvalidKeyError:
            return {}
        return self.client.hash_get_all(key) or {}

    def _deliver(self, url: str, body: Dict[str, Any]):
        resp = _post_with_retry(url, body, self.timeout)
        resp.raise_for_status()
        return resp

    def notify(self, job_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        POST ``event`` to every URL subscribed to it.

        Failed deliveries are logged and skipped. Once the breaker opens, the
        remaining URLs are not attempted.

        Returns:
            Number of successful deliveries
        """
        targets = [
            url
            for url, events in self.registrations(job_id).items()
            if isinstance(events, list) and (ALL_EVENTS in events or event in events)
        ]
        if not targets:
            return 0

        body = {"event": event, "timestamp": utc_now(), "job_id": job_id}
        body.update(payload or {})

        delivered = 0
        for url in targets:
            try:
                self.breaker.call(self._deliver, url, body)
            except CircuitOpenError as e:
                logger.warning("Webhook delivery skipped", job_id=job_id, event=event, error=str(e))
                break
            except DELIVERY_ERRORS as e:
                logger.error("Webhook delivery failed", job_id=job_id, url=url, event=event, error=str(e))
                logger.record_error("webhook", type(e).__name__)
                continue
            delivered += 1
            logger.debug("Webhook delivered", job_id=job_id, url=url, event=event)

        return delivered
