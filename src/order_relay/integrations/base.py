"""
Order sink interface.

A sink delivers one `OrderSnapshot` to an external system. Failures are
reported by raising:
- `TransientDeliveryError`: worth retrying (timeouts, 5xx, rate limits)
- `DeliveryError`: terminal (bad request, auth, malformed config)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from src.order_relay.order import OrderSnapshot


class DeliveryError(Exception):
    """Terminal delivery failure; retrying will not help."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Retryable delivery failure."""


_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def classify_http_status(status_code: int) -> Optional[type[DeliveryError]]:
    """None for 2xx, else the error class the status maps to."""
    if 200 <= status_code < 300:
        return None
    if status_code in _TRANSIENT_STATUS_CODES:
        return TransientDeliveryError
    return DeliveryError


def raise_for_delivery_status(response: httpx.Response, *, sink: str) -> None:
    error_cls = classify_http_status(response.status_code)
    if error_cls is None:
        return
    body = (response.text or "")[:200]
    raise error_cls(f"{sink} returned HTTP {response.status_code}: {body}", status_code=response.status_code)


class OrderSink(ABC):
    name: str = "sink"

    @abstractmethod
    async def send(self, snapshot: OrderSnapshot) -> None:
        """Deliver the snapshot or raise a `DeliveryError`."""
