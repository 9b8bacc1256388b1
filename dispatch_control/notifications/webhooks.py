# dispatch_control/notifications/webhooks.py
"""
Webhook relay - forwards notifications to an external endpoint.

Deliveries run on a small thread pool so the caller never waits on the
network. Failures are logged and dropped (at most once, no retry).
"""

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional
from uuid import uuid4

import httpx

from ..logging import get_logger

logger = get_logger(__name__)


@dataclass
class WebhookPayload:
    """Standard webhook payload structure."""
    event_id: str
    event_type: str
    timestamp: str
    recipient_id: str
    data: Dict[str, Any]


@dataclass
class WebhookDelivery:
    """Record of a webhook delivery attempt."""
    delivery_id: str
    event_id: str
    url: str
    event_type: str
    response_status: Optional[int]
    success: bool
    error: Optional[str]
    delivered_at: datetime


class NotificationWebhookRelay:
    """
    Posts notification events to a single configured URL.

    Args:
        url: Destination URL
        timeout_seconds: Per-request timeout
        headers: Extra headers (e.g. Authorization)
        max_workers: Delivery threads
        client: Optional preconfigured httpx.Client (tests inject a MockTransport)
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
        max_workers: int = 2,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.headers = headers or {}
        self.client = client or httpx.Client(timeout=timeout_seconds)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")
        self.recent_deliveries: Deque[WebhookDelivery] = deque(maxlen=100)

    def submit(self, recipient_id: str, event: Any) -> Future:
        """Queue a delivery and return immediately."""
        payload = WebhookPayload(
            event_id=str(uuid4()),
            event_type=event.type.value,
            timestamp=datetime.now(timezone.utc).isoformat(),
            recipient_id=recipient_id,
            data=event.to_dict(),
        )
        return self._executor.submit(self._deliver, payload)

    def _deliver(self, payload: WebhookPayload) -> WebhookDelivery:
        response_status = None
        error = None
        try:
            response = self.client.post(
                self.url,
                json=asdict(payload),
                headers={
                    "Content-Type": "application/json",
                    "X-Event-Type": payload.event_type,
                    "X-Event-ID": payload.event_id,
                    **self.headers,
                },
            )
            response_status = response.status_code
            response.raise_for_status()
        except httpx.HTTPError as e:
            error = str(e)

        delivery = WebhookDelivery(
            delivery_id=str(uuid4()),
            event_id=payload.event_id,
            url=self.url,
            event_type=payload.event_type,
            response_status=response_status,
            success=error is None,
            error=error,
            delivered_at=datetime.now(timezone.utc),
        )
        self.recent_deliveries.append(delivery)

        if delivery.success:
            logger.info(
                "webhook_delivered",
                event_id=payload.event_id,
                event_type=payload.event_type,
                status=response_status,
            )
        else:
            logger.warning(
                "webhook_delivery_failed",
                event_id=payload.event_id,
                event_type=payload.event_type,
                status=response_status,
                error=error,
            )
        return delivery

    def deliveries(self) -> List[WebhookDelivery]:
        return list(self.recent_deliveries)

    def close(self) -> None:
        """Wait for queued deliveries, then release the HTTP client."""
        self._executor.shutdown(wait=True)
        self.client.close()
