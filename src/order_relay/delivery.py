"""
Order delivery: idempotent, retried fan-out to every configured sink.

Each sink gets its own `SinkDeliverer`, which remembers which orders it has
delivered (keyed by call sid) so a snapshot is written at most once per sink
per process. Transient failures are retried with capped exponential backoff.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

import structlog

from src.order_relay.integrations.base import DeliveryError, OrderSink, TransientDeliveryError
from src.order_relay.order import OrderSnapshot

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_MS = 1000
DEFAULT_RETRY_MAX_MS = 8000

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class DeliveryOutcome:
    sink: str
    key: str
    success: bool
    attempts: int
    already_delivered: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class DispatchReport:
    outcomes: tuple[DeliveryOutcome, ...] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and all(o.success for o in self.outcomes)


def backoff_delay_ms(attempt: int, *, base_ms: int, max_ms: int) -> int:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(base_ms * (2 ** max(0, attempt - 1)), max_ms)


class SinkDeliverer:
    def __init__(
        self,
        sink: OrderSink,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_ms: int = DEFAULT_RETRY_BASE_MS,
        retry_max_ms: int = DEFAULT_RETRY_MAX_MS,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.sink = sink
        self.max_attempts = max(1, int(max_attempts))
        self.retry_base_ms = max(0, int(retry_base_ms))
        self.retry_max_ms = max(self.retry_base_ms, int(retry_max_ms))
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._delivered: set[str] = set()
        self._in_flight: set[str] = set()

    @property
    def name(self) -> str:
        return self.sink.name

    def was_delivered(self, key: str) -> bool:
        return key in self._delivered

    async def deliver(self, snapshot: OrderSnapshot) -> DeliveryOutcome:
        key = snapshot.idempotency_key

        async with self._lock:
            if key in self._delivered or key in self._in_flight:
                logger.info("Order already delivered; skipping", sink=self.name, key=key)
                return DeliveryOutcome(
                    sink=self.name, key=key, success=True, attempts=0, already_delivered=True
                )
            self._in_flight.add(key)

        try:
            outcome = await self._deliver_with_retry(snapshot, key)
        finally:
            async with self._lock:
                self._in_flight.discard(key)

        if outcome.success:
            async with self._lock:
                self._delivered.add(key)
        return outcome

    async def _deliver_with_retry(self, snapshot: OrderSnapshot, key: str) -> DeliveryOutcome:
        attempt = 0
        last_error: Optional[str] = None

        while attempt < self.max_attempts:
            attempt += 1
            started = time.time()
            try:
                await self.sink.send(snapshot)
            except TransientDeliveryError as e:
                last_error = str(e)
                logger.warning(
                    "Delivery attempt failed",
                    sink=self.name,
                    key=key,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=last_error,
                )
                if attempt < self.max_attempts:
                    delay_ms = backoff_delay_ms(attempt, base_ms=self.retry_base_ms, max_ms=self.retry_max_ms)
                    await self._sleep(delay_ms / 1000.0)
                continue
            except DeliveryError as e:
                logger.error("Delivery rejected", sink=self.name, key=key, attempt=attempt, error=str(e))
                return DeliveryOutcome(sink=self.name, key=key, success=False, attempts=attempt, error=str(e))
            except Exception as e:
                logger.exception("Delivery failed unexpectedly", sink=self.name, key=key, attempt=attempt)
                return DeliveryOutcome(
                    sink=self.name, key=key, success=False, attempts=attempt, error=str(e) or e.__class__.__name__
                )

            logger.info(
                "Order delivered to sink",
                sink=self.name,
                key=key,
                attempt=attempt,
                ms=int((time.time() - started) * 1000),
            )
            return DeliveryOutcome(sink=self.name, key=key, success=True, attempts=attempt)

        logger.error("Delivery gave up", sink=self.name, key=key, attempts=attempt, error=last_error)
        return DeliveryOutcome(sink=self.name, key=key, success=False, attempts=attempt, error=last_error)


class DeliveryDispatcher:
    """Fan a snapshot out to every sink concurrently; sinks never affect each other."""

    def __init__(
        self,
        sinks: Sequence[OrderSink],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_ms: int = DEFAULT_RETRY_BASE_MS,
        retry_max_ms: int = DEFAULT_RETRY_MAX_MS,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._deliverers = [
            SinkDeliverer(
                sink,
                max_attempts=max_attempts,
                retry_base_ms=retry_base_ms,
                retry_max_ms=retry_max_ms,
                sleep=sleep,
            )
            for sink in sinks
        ]

    @property
    def sink_names(self) -> list[str]:
        return [d.name for d in self._deliverers]

    async def deliver(self, snapshot: OrderSnapshot) -> DispatchReport:
        if not self._deliverers:
            logger.warning("No order sinks configured", call_sid=snapshot.call_sid, order=snapshot.to_record())
            return DispatchReport()

        results = await asyncio.gather(
            *(d.deliver(snapshot) for d in self._deliverers),
            return_exceptions=True,
        )

        outcomes = []
        for deliverer, result in zip(self._deliverers, results):
            if isinstance(result, BaseException):
                logger.error("Sink deliverer crashed", sink=deliverer.name, error=str(result))
                outcomes.append(
                    DeliveryOutcome(
                        sink=deliverer.name,
                        key=snapshot.idempotency_key,
                        success=False,
                        attempts=0,
                        error=str(result) or result.__class__.__name__,
                    )
                )
            else:
                outcomes.append(result)

        return DispatchReport(outcomes=tuple(outcomes))
