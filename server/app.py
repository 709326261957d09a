"""
FastAPI server for the donut shop voice ordering line.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST|GET /incoming-call: TwiML for the Twilio voice webhook
- WS /media-stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Set, Tuple
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import httpx
import structlog
import uvicorn
from twilio.twiml.voice_response import Connect, Stream, VoiceResponse

from src.order_relay.config import Config, get_config, init_config, ConfigError
from src.order_relay.delivery import DeliveryDispatcher
from src.order_relay.integrations.base import OrderSink
from src.order_relay.integrations.webhook import WebhookSink
from src.order_relay.menu import MenuService
from src.order_relay.session import CallSession
from src.order_relay.twilio_protocol import UNKNOWN_CALLER

_SECRET_KEY_MARKERS = ("api_key", "token", "secret", "password", "credential", "authorization")


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor: mask values of secret-looking keys."""
    for key in list(event_dict.keys()):
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEY_MARKERS) and not isinstance(event_dict[key], bool):
            event_dict[key] = "***"
    return event_dict


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    tool_calls: int = 0
    orders_dispatched: int = 0
    orders_delivered: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "tool_calls": self.tool_calls,
            "orders_dispatched": self.orders_dispatched,
            "orders_delivered": self.orders_delivered,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()

# Upper bound on how long shutdown waits for in-flight order deliveries
SHUTDOWN_DELIVERY_TIMEOUT_SECONDS = 30.0


async def build_order_services(
    config: Config, http_client: httpx.AsyncClient
) -> Tuple[MenuService, DeliveryDispatcher]:
    """Menu (built-in, replaced by the sheet menu when configured) and the order sinks."""
    sinks: List[OrderSink] = []
    dynamic = None

    if config.order_webhook_url:
        sinks.append(
            WebhookSink(config.order_webhook_url, http_client, timeout_seconds=config.delivery_timeout_seconds)
        )

    if config.sheets_enabled:
        # google-auth is only needed when Sheets is configured.
        from src.order_relay.integrations.google_sheets import (
            GoogleSheetsClient,
            SheetsConfigError,
            SheetsOrderSink,
            load_sheet_menu,
        )

        try:
            sheets = GoogleSheetsClient.from_base64(
                config.google_sheets_credentials_base64,
                http_client,
                timeout_seconds=config.delivery_timeout_seconds,
            )
        except SheetsConfigError as e:
            logger.error("Google Sheets disabled", error=str(e))
        else:
            if config.google_sheets_id:
                sinks.append(SheetsOrderSink(sheets, config.google_sheets_id, range_=config.google_sheets_range))
            else:
                logger.warning("GOOGLE_SHEETS_ID not set; call log sheet disabled")
            if config.google_sheets_menu_id:
                dynamic = await load_sheet_menu(
                    sheets, config.google_sheets_menu_id, config.google_sheets_menu_sheet
                )

    menu = MenuService(dynamic=dynamic)
    dispatcher = DeliveryDispatcher(
        sinks,
        max_attempts=config.delivery_max_attempts,
        retry_base_ms=config.delivery_retry_base_ms,
        retry_max_ms=config.delivery_retry_max_ms,
    )

    logger.info(
        "Order services ready",
        menu_items=len(menu.current()),
        menu_source="sheet" if dynamic is not None else "built-in",
        sinks=dispatcher.sink_names,
    )
    return menu, dispatcher


def _record_delivery(task: asyncio.Task) -> None:
    if task.cancelled() or task.exception() is not None:
        return
    report = task.result()
    if report is not None and report.success:
        metrics.orders_delivered += 1


def track_delivery_task(app_state: Any, task: asyncio.Task) -> None:
    """Keep a call's delivery alive past its websocket so shutdown can wait for it."""
    tasks: Optional[Set[asyncio.Task]] = getattr(app_state, "delivery_tasks", None)
    if tasks is None:
        tasks = set()
        app_state.delivery_tasks = tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    task.add_done_callback(_record_delivery)


async def drain_delivery_tasks(app_state: Any, timeout: float = SHUTDOWN_DELIVERY_TIMEOUT_SECONDS) -> None:
    pending = [t for t in getattr(app_state, "delivery_tasks", None) or () if not t.done()]
    if not pending:
        return

    logger.info("Waiting for order deliveries", pending=len(pending))
    _, still_pending = await asyncio.wait(pending, timeout=timeout)
    if still_pending:
        logger.warning("Order deliveries did not finish before shutdown", pending=len(still_pending))
        for task in still_pending:
            task.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting voice ordering server...")

    http_client: Optional[httpx.AsyncClient] = None
    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        http_client = httpx.AsyncClient()
        app.state.http_client = http_client
        app.state.menu, app.state.dispatcher = await build_order_services(config, http_client)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            shop=config.shop_name,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...")
    await drain_delivery_tasks(app.state)
    if http_client is not None:
        await http_client.aclose()


# Create FastAPI app
app = FastAPI(
    title="Donut Shop Voice Ordering",
    description="Phone orders through Twilio Media Streams and OpenAI Realtime",
    version="1.0.0",
    lifespan=lifespan,
)


def build_incoming_call_twiml(
    ws_url: str, *, caller: str, call_sid: str, fallback_message: Optional[str] = None
) -> str:
    response = VoiceResponse()
    connect = Connect()
    stream = Stream(url=ws_url, name=call_sid) if call_sid else Stream(url=ws_url)
    stream.parameter(name="callerPhone", value=caller)
    stream.parameter(name="callSid", value=call_sid)
    connect.append(stream)
    response.append(connect)
    # Only reached when we close the stream ourselves (e.g. the AI side dropped).
    if fallback_message:
        response.say(fallback_message)
    return str(response)


def _fallback_message(config: Config) -> str:
    return (
        f"Sorry, we're having trouble taking your order right now. "
        f"Please call {config.shop_name} again in a few minutes."
    )


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/incoming-call")
@app.get("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """
    Twilio voice webhook.

    Returns TwiML that connects the call to our media stream, passing the
    caller number and call sid as stream parameters.
    """
    config = get_config()

    params: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})

    caller = params.get("From") or UNKNOWN_CALLER
    call_sid = params.get("CallSid") or ""

    twiml = build_incoming_call_twiml(
        config.ws_url,
        caller=caller,
        call_sid=call_sid,
        fallback_message=_fallback_message(config),
    )

    logger.info(
        "Incoming call",
        call_sid=call_sid,
        caller=caller,
        called=params.get("Called") or params.get("To"),
        ws_url=config.ws_url,
    )

    return Response(
        content=twiml,
        media_type="application/xml",
    )


def _order_services(app_state: Any) -> Tuple[MenuService, Optional[DeliveryDispatcher]]:
    menu = getattr(app_state, "menu", None)
    if menu is None:
        menu = MenuService()
        app_state.menu = menu
    return menu, getattr(app_state, "dispatcher", None)


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One `CallSession` per connection; it relays audio to OpenAI Realtime and
    delivers the order when the stream ends.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = f"call_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=metrics.active_calls,
    )

    menu, dispatcher = _order_services(websocket.app.state)

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        await websocket.send_text(message)

    session = CallSession(send_message, menu=menu, dispatcher=dispatcher, config=get_config())

    try:
        # Handle incoming messages
        while not session.is_closed:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id, call_sid=session.call_sid)
                break

            try:
                await session.handle_message(message)
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        # Cleanup
        try:
            await session.end("close")
        except Exception as e:
            logger.error("Error ending session", error=str(e))

        metrics.tool_calls += session.counters.tool_calls
        if session.delivery_task is not None:
            metrics.orders_dispatched += 1
            track_delivery_task(websocket.app.state, session.delivery_task)
        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
            call_sid=session.call_sid,
            active_calls=metrics.active_calls,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = type('Config', (), {'port': 7860, 'log_level': 'INFO'})()

    configure_logging(getattr(config, 'log_level', 'INFO'))

    logger.info(
        "Starting server",
        port=getattr(config, 'port', 7860),
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=getattr(config, 'port', 7860),
        log_level=getattr(config, 'log_level', 'INFO').lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
