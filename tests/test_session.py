"""
Tests for the per-call session orchestrator.
"""

import asyncio
import json
from typing import List, Optional

import pytest
from unittest.mock import AsyncMock

from src.order_relay.config import get_config
from src.order_relay.delivery import DeliveryDispatcher
from src.order_relay.integrations.base import DeliveryError, OrderSink
from src.order_relay.realtime import RealtimeConnection
from src.order_relay.session import CallSession, SessionState


class FakeConnection:
    """Stands in for RealtimeConnection; the test plays the AI side."""

    def __init__(self, handler, config, *, fail_connect: bool = False):
        self.handler = handler
        self.config = config
        self.fail_connect = fail_connect
        self.session_config: Optional[dict] = None
        self.greeting: Optional[str] = None
        self.ready = False
        self.audio: List[str] = []
        self.tool_results: List[tuple] = []
        self.close_calls = 0

    @property
    def is_ready(self) -> bool:
        return self.ready

    async def connect(self, session: dict, *, greeting: Optional[str] = None) -> None:
        if self.fail_connect:
            raise OSError("connection refused")
        self.session_config = session
        self.greeting = greeting

    def send_audio(self, payload_b64: str) -> bool:
        if not self.ready:
            return False
        self.audio.append(payload_b64)
        return True

    def send_tool_result(self, call_id: str, output: str) -> bool:
        self.tool_results.append((call_id, json.loads(output)))
        return True

    async def close(self) -> None:
        self.close_calls += 1
        self.ready = False

    async def become_ready(self) -> None:
        self.ready = True
        await self.handler.on_ready()


class RecordingSink(OrderSink):
    name = "recording"

    def __init__(self, errors: List[Exception] = ()):
        self.records: List[dict] = []
        self._errors = list(errors)

    async def send(self, snapshot) -> None:
        if self._errors:
            raise self._errors.pop(0)
        self.records.append(snapshot.to_record())


def _make_session(menu, *, sink: Optional[OrderSink] = None, fail_connect: bool = False):
    connections: List[FakeConnection] = []

    def factory(handler, config):
        connection = FakeConnection(handler, config, fail_connect=fail_connect)
        connections.append(connection)
        return connection

    async def _no_sleep(_seconds: float) -> None:
        return None

    dispatcher = DeliveryDispatcher([sink] if sink else [], sleep=_no_sleep)
    send_message = AsyncMock()
    session = CallSession(
        send_message,
        menu=menu,
        dispatcher=dispatcher,
        config=get_config(),
        connection_factory=factory,
    )
    return session, send_message, connections


@pytest.mark.asyncio
async def test_start_opens_realtime_connection(menu, twilio_start_message):
    session, _, connections = _make_session(menu)

    await session.handle_message(twilio_start_message)

    assert session.state == SessionState.STARTING
    assert session.call_sid == "CA789012"
    assert session.stream_sid == "MZ123456"
    assert session.caller_number == "+15551234567"
    assert session.order is not None

    connection = connections[0]
    config = connection.session_config
    assert config["input_audio_format"] == "g711_ulaw"
    assert config["output_audio_format"] == "g711_ulaw"
    assert config["turn_detection"]["type"] == "server_vad"
    assert len(config["tools"]) == 7
    assert "glazed donut" in config["instructions"]
    assert "No items in order yet." in config["instructions"]
    assert "Glazed and Confused" in connection.greeting


@pytest.mark.asyncio
async def test_audio_is_dropped_until_ready(menu, twilio_start_message, twilio_media_message):
    session, _, connections = _make_session(menu)
    await session.handle_message(twilio_start_message)

    await session.handle_message(twilio_media_message)
    assert connections[0].audio == []
    assert session.counters.audio_chunks_dropped == 1

    await connections[0].become_ready()
    assert session.state == SessionState.STREAMING

    await session.handle_message(twilio_media_message)
    payload = json.loads(twilio_media_message)["media"]["payload"]
    assert connections[0].audio == [payload]
    assert session.counters.audio_chunks_in == 2
    assert session.counters.audio_chunks_forwarded == 1


@pytest.mark.asyncio
async def test_ai_audio_is_relayed_to_twilio(menu, twilio_start_message):
    session, send_message, connections = _make_session(menu)
    await session.handle_message(twilio_start_message)
    await connections[0].become_ready()

    await session.on_audio_delta("AAAA")

    sent = json.loads(send_message.await_args.args[0])
    assert sent == {"event": "media", "streamSid": "MZ123456", "media": {"payload": "AAAA"}}
    assert session.counters.audio_chunks_out == 1


@pytest.mark.asyncio
async def test_twilio_send_failure_is_not_raised(menu, twilio_start_message):
    session, send_message, connections = _make_session(menu)
    await session.handle_message(twilio_start_message)
    send_message.side_effect = RuntimeError("socket closed")

    await session.on_audio_delta("AAAA")

    assert session.counters.audio_chunks_out == 0


@pytest.mark.asyncio
async def test_every_tool_call_gets_a_reply(menu, twilio_start_message):
    session, _, connections = _make_session(menu)
    await session.handle_message(twilio_start_message)
    await connections[0].become_ready()

    await session.on_tool_call("call_1", "add_item_to_order", '{"name": "pizza"}')
    await session.on_tool_call("call_2", "add_item_to_order", '{"name": "glazed donut", "size": "dozen"}')
    await session.on_tool_call("call_3", "fly_to_moon", "{}")

    results = connections[0].tool_results
    assert [call_id for call_id, _ in results] == ["call_1", "call_2", "call_3"]
    assert results[0][1]["success"] is False
    assert results[1][1]["success"] is True
    assert results[2][1] == {"success": False, "error": "Unknown function: fly_to_moon"}
    assert session.counters.tool_calls == 3


@pytest.mark.asyncio
async def test_full_call_delivers_order_once(menu, twilio_start_message, twilio_stop_message):
    sink = RecordingSink()
    session, _, connections = _make_session(menu, sink=sink)

    await session.handle_message(twilio_start_message)
    connection = connections[0]
    await connection.become_ready()

    await session.on_tool_call("c1", "add_item_to_order", '{"name": "glazed donut", "size": "dozen", "quantity": 1}')
    await session.on_tool_call("c2", "set_delivery_method", '{"method": "pickup"}')
    await session.on_tool_call("c3", "set_customer_name", '{"name": "Jane"}')
    await session.on_tool_call("c4", "confirm_order", "{}")
    assert all(result["success"] for _, result in connection.tool_results)

    await session.handle_message(twilio_stop_message)
    report = await session.wait_for_delivery()

    assert session.state == SessionState.CLOSED
    assert connection.close_calls == 1
    assert report.success is True
    assert len(sink.records) == 1
    assert sink.records[0]["total"] == 24.83
    assert sink.records[0]["customerName"] == "Jane"
    assert session.order.logged is True

    # The socket closing right after "stop" must not deliver again.
    await session.end("close")
    assert connection.close_calls == 1
    assert len(sink.records) == 1


@pytest.mark.asyncio
async def test_unconfirmed_order_is_still_delivered(menu, twilio_start_message):
    sink = RecordingSink()
    session, _, connections = _make_session(menu, sink=sink)
    await session.handle_message(twilio_start_message)
    await connections[0].become_ready()
    await session.on_tool_call("c1", "add_item_to_order", '{"name": "cruller"}')

    await session.end("close")
    await session.wait_for_delivery()

    assert sink.records[0]["status"] == "pending"
    assert session.order.logged is True


@pytest.mark.asyncio
async def test_empty_order_is_not_delivered(menu, twilio_start_message, twilio_stop_message):
    sink = RecordingSink()
    session, _, _ = _make_session(menu, sink=sink)
    await session.handle_message(twilio_start_message)

    await session.handle_message(twilio_stop_message)

    assert await session.wait_for_delivery() is None
    assert sink.records == []
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_failed_delivery_leaves_order_unlogged(menu, twilio_start_message):
    sink = RecordingSink(errors=[DeliveryError("rejected")])
    session, _, connections = _make_session(menu, sink=sink)
    await session.handle_message(twilio_start_message)
    await connections[0].become_ready()
    await session.on_tool_call("c1", "add_item_to_order", '{"name": "latte", "size": "large"}')

    await session.end("stop")
    report = await session.wait_for_delivery()

    assert report.success is False
    assert session.order.logged is False
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_connect_failure_keeps_session_starting(menu, twilio_start_message, twilio_media_message):
    session, _, connections = _make_session(menu, fail_connect=True)

    await session.handle_message(twilio_start_message)
    await session.handle_message(twilio_media_message)

    assert session.state == SessionState.STARTING
    assert session.counters.audio_chunks_dropped == 1

    await session.end("close")
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_tool_calls_after_end_do_not_change_order(menu, twilio_start_message):
    session, _, connections = _make_session(menu)
    await session.handle_message(twilio_start_message)

    await session.end("close")
    await session.on_tool_call("late", "add_item_to_order", '{"name": "cruller"}')

    assert session.order.items == []


@pytest.mark.asyncio
async def test_messages_after_close_are_ignored(menu, twilio_start_message, twilio_media_message):
    session, _, _ = _make_session(menu)
    await session.handle_message(twilio_start_message)
    await session.end("close")

    await session.handle_message(twilio_media_message)

    assert session.counters.audio_chunks_in == 0


@pytest.mark.asyncio
async def test_invalid_messages_are_ignored(menu):
    session, _, connections = _make_session(menu)

    await session.handle_message("not json")
    await session.handle_message(json.dumps({"event": "connected", "protocol": "Call"}))

    assert session.state == SessionState.IDLE
    assert connections == []


@pytest.mark.asyncio
async def test_ai_disconnect_ends_call_and_delivers(menu, twilio_start_message, twilio_media_message):
    sink = RecordingSink()
    session, _, connections = _make_session(menu, sink=sink)
    await session.handle_message(twilio_start_message)
    await connections[0].become_ready()
    await session.on_tool_call("c1", "add_item_to_order", '{"name": "cruller"}')

    await session.on_closed()
    await session.wait_for_delivery()

    assert session.is_closed
    assert connections[0].close_calls == 1
    assert len(sink.records) == 1

    # Twilio keeps streaming until the socket closes; nothing more is processed.
    await session.handle_message(twilio_media_message)
    assert session.counters.audio_chunks_in == 0


class ScriptedOpenAISocket:
    """Websocket double for the OpenAI side; the test feeds server events."""

    def __init__(self):
        self.sent: List[dict] = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self._incoming.put_nowait(None)

    def feed(self, event: dict) -> None:
        self._incoming.put_nowait(json.dumps(event))

    def sent_types(self) -> List[str]:
        return [m["type"] for m in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


async def _eventually(predicate, timeout: float = 1.0) -> None:
    async def _wait() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.mark.asyncio
async def test_call_through_realtime_connection(menu, twilio_start_message, twilio_media_message, twilio_stop_message):
    ws = ScriptedOpenAISocket()

    async def connector(url, **kwargs):
        return ws

    def factory(handler, config):
        return RealtimeConnection(handler, config=config, connector=connector)

    sink = RecordingSink()
    dispatcher = DeliveryDispatcher([sink])
    session = CallSession(
        AsyncMock(),
        menu=menu,
        dispatcher=dispatcher,
        config=get_config(),
        connection_factory=factory,
    )

    await session.handle_message(twilio_start_message)
    ws.feed({"type": "session.created", "session": {"id": "sess_1"}})
    await _eventually(lambda: session.state == SessionState.STREAMING)

    await session.handle_message(twilio_media_message)
    payload = json.loads(twilio_media_message)["media"]["payload"]
    await _eventually(lambda: {"type": "input_audio_buffer.append", "audio": payload} in ws.sent)
    assert session.counters.audio_chunks_forwarded == 1

    calls = [
        ("call_1", "add_item_to_order", '{"name": "glazed donut", "size": "dozen"}'),
        ("call_2", "set_customer_name", '{"name": "Jane Smith"}'),
        ("call_3", "confirm_order", "{}"),
    ]
    for call_id, name, arguments in calls:
        ws.feed({
            "type": "response.function_call_arguments.done",
            "call_id": call_id,
            "name": name,
            "arguments": arguments,
        })

    def outputs() -> List[dict]:
        return [m for m in ws.sent if m["type"] == "conversation.item.create"]

    await _eventually(lambda: len(outputs()) == 3 and ws.sent_types()[-1] == "response.create")

    assert [m["item"]["call_id"] for m in outputs()] == ["call_1", "call_2", "call_3"]
    assert all(json.loads(m["item"]["output"])["success"] for m in outputs())
    for message in outputs():
        index = ws.sent.index(message)
        assert ws.sent[index + 1] == {"type": "response.create"}

    await session.handle_message(twilio_stop_message)
    report = await session.wait_for_delivery()

    assert report.success is True
    assert len(sink.records) == 1
    assert sink.records[0]["total"] == 24.83
    assert sink.records[0]["status"] == "completed"
    assert session.order.confirmed is True
    assert session.order.logged is True
    assert session.state == SessionState.CLOSED
