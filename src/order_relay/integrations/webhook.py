from __future__ import annotations

import httpx
import structlog

from src.order_relay.integrations.base import (
    OrderSink,
    TransientDeliveryError,
    raise_for_delivery_status,
)
from src.order_relay.order import OrderSnapshot

logger = structlog.get_logger(__name__)


class WebhookSink(OrderSink):
    """POST the order record as JSON to a configured URL."""

    name = "webhook"

    def __init__(self, url: str, client: httpx.AsyncClient, *, timeout_seconds: float = 10.0):
        self.url = url
        self._client = client
        self._timeout = timeout_seconds

    async def send(self, snapshot: OrderSnapshot) -> None:
        try:
            response = await self._client.post(
                self.url,
                json=snapshot.to_record(),
                headers={"Idempotency-Key": snapshot.idempotency_key},
                timeout=self._timeout,
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientDeliveryError(f"Webhook request failed: {e.__class__.__name__}: {e}") from e

        raise_for_delivery_status(response, sink=self.name)
        logger.info("Order posted to webhook", call_sid=snapshot.call_sid, status=response.status_code)
