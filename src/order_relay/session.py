"""
Per-call session: Twilio Media Streams <-> OpenAI Realtime, plus order state.

Twilio (g711_ulaw 8kHz) -> OpenAI Realtime -> Twilio (g711_ulaw 8kHz)

Audio is relayed verbatim in both directions. Function calls from the model
are applied to the call's `Order` and always answered (reply then continue).
When the call ends the order snapshot is handed to the delivery dispatcher.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from src.order_relay.config import Config, get_config
from src.order_relay.delivery import DeliveryDispatcher, DispatchReport
from src.order_relay.menu import MenuService
from src.order_relay.order import Order, OrderSnapshot
from src.order_relay.order_tools import OrderToolExecutor, ToolFailure, tool_definitions
from src.order_relay.prompt_utils import build_instructions
from src.order_relay.realtime import RealtimeConnection, RealtimeHandler, build_session_config
from src.order_relay.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioStartEvent,
    create_media_message,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    ENDING = "ending"
    CLOSED = "closed"


@dataclass
class SessionCounters:
    audio_chunks_in: int = 0
    audio_chunks_forwarded: int = 0
    audio_chunks_dropped: int = 0
    audio_chunks_out: int = 0
    tool_calls: int = 0


ConnectionFactory = Callable[[RealtimeHandler, Config], RealtimeConnection]


def _default_connection_factory(handler: RealtimeHandler, config: Config) -> RealtimeConnection:
    return RealtimeConnection(handler, config=config)


def _greeting(config: Config) -> str:
    return (
        "Greet the customer warmly. Say: "
        f"\"Thanks for calling {config.shop_name}! What can I get for you today?\""
    )


class CallSession:
    """
    One phone call.

    Interface used by `server/app.py`:
    - `handle_message(raw_message)` for every Twilio frame
    - `end(reason)` when Twilio stops the stream or the socket closes
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        menu: MenuService,
        dispatcher: Optional[DeliveryDispatcher] = None,
        config: Optional[Config] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self._menu = menu
        self._dispatcher = dispatcher
        self._connection_factory = connection_factory or _default_connection_factory

        self.state: SessionState = SessionState.IDLE
        self.counters = SessionCounters()

        self.call_sid: str = ""
        self.stream_sid: str = ""
        self.caller_number: str = ""

        self.order: Optional[Order] = None
        self._executor: Optional[OrderToolExecutor] = None
        self._connection: Optional[RealtimeConnection] = None

        self._telephony_open: bool = True
        self._end_started: bool = False
        self._delivery_task: Optional[asyncio.Task] = None

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    @property
    def delivery_task(self) -> Optional[asyncio.Task]:
        return self._delivery_task

    async def handle_message(self, raw_message: str) -> None:
        if self._end_started:
            return

        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.START:
            await self._handle_start(event)
            return

        if event_type == TwilioEventType.MEDIA:
            self._handle_media(event)
            return

        if event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", call_sid=self.call_sid, stream_sid=self.stream_sid)
            await self.end("stop")
            return

        # connected / mark / dtmf carry nothing for the order flow.

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self.order is not None:
            logger.warning("Duplicate start event ignored", call_sid=self.call_sid)
            return

        self.call_sid = event.call_sid
        self.stream_sid = event.stream_sid
        self.caller_number = event.caller_number

        self.order = Order(
            self.call_sid,
            self.stream_sid,
            self.caller_number,
            menu=self._menu,
            tax_rate=self.config.tax_rate,
        )
        self._executor = OrderToolExecutor(self.order)
        self.state = SessionState.STARTING

        logger.info(
            "Call started",
            call_sid=self.call_sid,
            stream_sid=self.stream_sid,
            caller=self.caller_number,
        )

        session_config = build_session_config(
            self.config,
            instructions=build_instructions(
                config=self.config,
                menu_text=self._menu.prompt_text(),
                order=self.order,
            ),
            tools=tool_definitions(),
        )

        self._connection = self._connection_factory(self, self.config)
        try:
            await self._connection.connect(session_config, greeting=_greeting(self.config))
        except Exception as e:
            logger.error("Failed to connect to OpenAI Realtime", error=str(e), call_sid=self.call_sid)

    def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not event.payload:
            return

        self.counters.audio_chunks_in += 1
        received = self.counters.audio_chunks_in

        connection = self._connection
        if (
            self.state != SessionState.STREAMING
            or connection is None
            or not connection.send_audio(event.payload)
        ):
            self.counters.audio_chunks_dropped += 1
            if self.counters.audio_chunks_dropped == 1:
                logger.info("Dropping caller audio until OpenAI session is ready", call_sid=self.call_sid)
            return

        self.counters.audio_chunks_forwarded += 1
        if received == 1 or received == 50 or received % 500 == 0:
            logger.info(
                "Audio flowing to OpenAI",
                call_sid=self.call_sid,
                received=received,
                forwarded=self.counters.audio_chunks_forwarded,
            )

    # RealtimeHandler

    async def on_ready(self) -> None:
        if self.state == SessionState.STARTING:
            self.state = SessionState.STREAMING
            logger.info("Session streaming", call_sid=self.call_sid)

    async def on_audio_delta(self, delta: str) -> None:
        if not self._telephony_open or not self.stream_sid or self._end_started:
            return

        try:
            await self._send_message(create_media_message(self.stream_sid, delta))
        except Exception as e:
            logger.warning("Failed to send audio to Twilio", error=str(e), call_sid=self.call_sid)
            return

        self.counters.audio_chunks_out += 1
        if self.counters.audio_chunks_out == 1:
            logger.info("First audio sent to Twilio", call_sid=self.call_sid)

    async def on_tool_call(self, call_id: str, name: str, arguments: str) -> None:
        self.counters.tool_calls += 1
        logger.info("Function call", call_sid=self.call_sid, tool=name, call_id=call_id)

        if self._executor is None or self.state not in (SessionState.STARTING, SessionState.STREAMING):
            result = ToolFailure(error="The call is ending; the order can no longer change")
        else:
            result = self._executor.execute(name, arguments)

        if self._connection is not None:
            self._connection.send_tool_result(call_id, result.to_output())

    async def on_transcript(self, role: str, text: str) -> None:
        if text:
            logger.info("Transcript", call_sid=self.call_sid, role=role, text=text[:500])

    async def on_closed(self) -> None:
        if self._end_started:
            return
        logger.warning("OpenAI Realtime connection lost", call_sid=self.call_sid, state=self.state.value)
        # Nothing can answer the caller any more; TwiML plays the fallback message.
        await self.end("ai_closed")

    # Lifecycle

    async def end(self, reason: str) -> None:
        """Finish the call once; later calls are no-ops."""
        if self._end_started:
            return
        self._end_started = True

        previous = self.state
        self.state = SessionState.ENDING
        if reason == "close":
            self._telephony_open = False

        logger.info("Call ending", call_sid=self.call_sid, reason=reason, previous_state=previous.value)

        connection = self._connection
        self._connection = None
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.warning("OpenAI Realtime close failed", error=str(e), call_sid=self.call_sid)

        order = self.order
        if order is not None:
            logger.info(
                "Final order state",
                call_sid=self.call_sid,
                items=order.summary(),
                total=str(order.total),
                confirmed=order.confirmed,
                customer_name=order.customer_name,
                delivery_method=order.delivery_method,
                logged=order.logged,
            )

            if order.items and not order.logged:
                if not order.confirmed:
                    logger.info("Logging unconfirmed order captured before hang-up", call_sid=self.call_sid)
                snapshot = order.snapshot_for_delivery()
                self._delivery_task = asyncio.create_task(self._deliver(order, snapshot))
            elif not order.items:
                logger.info("No items ordered; nothing to deliver", call_sid=self.call_sid)

        self.state = SessionState.CLOSED
        logger.info("Call ended", call_sid=self.call_sid, reason=reason, **asdict(self.counters))

    async def _deliver(self, order: Order, snapshot: OrderSnapshot) -> Optional[DispatchReport]:
        if self._dispatcher is None:
            logger.warning("No delivery dispatcher configured; order not delivered", call_sid=snapshot.call_sid)
            return None

        try:
            report = await self._dispatcher.deliver(snapshot)
        except Exception:
            logger.exception("Order delivery failed", call_sid=snapshot.call_sid)
            return None

        if report.success:
            order.mark_logged()
            logger.info("Order delivered", call_sid=snapshot.call_sid, sinks=len(report.outcomes))
        else:
            logger.warning(
                "Order delivery incomplete",
                call_sid=snapshot.call_sid,
                failed=[o.sink for o in report.outcomes if not o.success],
            )
        return report

    async def wait_for_delivery(self) -> Optional[DispatchReport]:
        if self._delivery_task is None:
            return None
        return await self._delivery_task
