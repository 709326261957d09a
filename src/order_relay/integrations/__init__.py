"""Order sinks: where finished orders are delivered."""

from src.order_relay.integrations.base import (
    DeliveryError,
    OrderSink,
    TransientDeliveryError,
    classify_http_status,
)
from src.order_relay.integrations.webhook import WebhookSink

__all__ = [
    "DeliveryError",
    "OrderSink",
    "TransientDeliveryError",
    "WebhookSink",
    "classify_http_status",
]
