"""
OpenAI Realtime (speech-to-speech) connection.

Owns one websocket to the Realtime API for one call:
- sends `session.update` once at connect (instructions, audio formats, tools)
- relays caller audio as `input_audio_buffer.append`
- hands audio deltas, transcripts and function calls to a handler
- answers function calls with `function_call_output` + `response.create`

Outbound events go through a single ordered send queue so the Twilio receiver
never blocks on OpenAI backpressure. Caller audio is only accepted while a few
frames are waiting; past that it is dropped rather than replayed late.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog
import websockets

from src.order_relay.config import Config, get_config

logger = structlog.get_logger(__name__)

# 20ms frames; anything older than this backlog is stale.
MAX_PENDING_AUDIO_FRAMES = 10


class RealtimeHandler(Protocol):
    async def on_ready(self) -> None: ...

    async def on_audio_delta(self, delta: str) -> None: ...

    async def on_tool_call(self, call_id: str, name: str, arguments: str) -> None: ...

    async def on_transcript(self, role: str, text: str) -> None: ...

    async def on_closed(self) -> None: ...


@dataclass
class _ToolCallState:
    name: str
    arguments: str = ""


def build_session_config(config: Config, *, instructions: str, tools: list[dict[str, Any]]) -> dict[str, Any]:
    vad_threshold = min(1.0, max(0.0, float(config.openai_realtime_vad_threshold)))

    session: dict[str, Any] = {
        "modalities": ["text", "audio"],
        "instructions": instructions,
        "voice": config.openai_realtime_voice,
        "input_audio_format": "g711_ulaw",
        "output_audio_format": "g711_ulaw",
        "turn_detection": {
            "type": "server_vad",
            "threshold": vad_threshold,
            "prefix_padding_ms": int(config.openai_realtime_prefix_padding_ms),
            "silence_duration_ms": int(config.openai_realtime_turn_silence_ms),
        },
        "tools": tools,
        "tool_choice": "auto",
        "temperature": config.openai_realtime_temperature,
        "max_response_output_tokens": config.openai_realtime_max_output_tokens,
    }

    transcription_model = (config.openai_realtime_transcription_model or "").strip()
    if transcription_model:
        session["input_audio_transcription"] = {"model": transcription_model}

    return session


class RealtimeConnection:
    """
    One OpenAI Realtime websocket.

    `connector` defaults to `websockets.connect`; tests pass a fake.
    """

    def __init__(
        self,
        handler: RealtimeHandler,
        *,
        config: Optional[Config] = None,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self.config = config or get_config()
        self._handler = handler
        self._connector = connector or websockets.connect

        self._ws: Optional[Any] = None
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=2000)
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None

        self._ready: bool = False
        self._closed: bool = False
        self.session_id: Optional[str] = None

        self._tool_calls: dict[str, _ToolCallState] = {}

        self._pending_audio: int = 0
        self.audio_chunks_sent: int = 0
        self.audio_chunks_dropped: int = 0
        self.audio_chunks_received: int = 0

    @property
    def is_ready(self) -> bool:
        return self._ready and self._ws is not None and not self._closed

    async def connect(self, session: dict[str, Any], *, greeting: Optional[str] = None) -> None:
        if self._ws or self._closed:
            return

        api_key = (self.config.openai_api_key or "").strip()
        model = (self.config.openai_realtime_model or "").strip()
        if not api_key or not model:
            raise RuntimeError("OpenAI Realtime requires OPENAI_API_KEY and OPENAI_REALTIME_MODEL")

        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

        self._ws = await self._connector(
            self.config.realtime_url,
            additional_headers=headers,
            open_timeout=self.config.openai_realtime_connect_timeout_seconds,
        )

        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._receive_loop())

        self._enqueue({"type": "session.update", "session": session})

        if greeting:
            self._enqueue(
                {
                    "type": "response.create",
                    "response": {"modalities": ["text", "audio"], "instructions": greeting},
                }
            )

        logger.info(
            "OpenAI Realtime connected",
            model=model,
            voice=session.get("voice"),
            tools=len(session.get("tools") or []),
        )

    def send_audio(self, payload_b64: str) -> bool:
        if not payload_b64 or not self.is_ready:
            return False
        if self._pending_audio >= MAX_PENDING_AUDIO_FRAMES:
            self.audio_chunks_dropped += 1
            if self.audio_chunks_dropped == 1:
                logger.warning("OpenAI send backlog; dropping caller audio", pending=self._pending_audio)
            return False
        if not self._enqueue({"type": "input_audio_buffer.append", "audio": payload_b64}):
            return False
        self._pending_audio += 1
        self.audio_chunks_sent += 1
        return True

    def send_tool_result(self, call_id: str, output: str) -> bool:
        """Reply to a function call, then ask the model to keep talking."""
        if self._closed or self._ws is None:
            logger.warning("Dropping tool result; realtime connection closed", call_id=call_id)
            return False

        sent = self._enqueue(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "function_call_output",
                    "call_id": call_id,
                    "output": output,
                },
            }
        )
        return self._enqueue({"type": "response.create"}) and sent

    def _enqueue(self, message: dict) -> bool:
        if self._closed:
            return False
        try:
            self._send_queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("OpenAI send queue full; dropping event", type=message.get("type"))
            return False
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready = False

        try:
            self._send_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

        current = asyncio.current_task()
        tasks = [t for t in (self._send_task, self._recv_task) if t and t is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug("OpenAI websocket close failed", error=str(e))

        logger.info(
            "OpenAI Realtime closed",
            audio_chunks_sent=self.audio_chunks_sent,
            audio_chunks_dropped=self.audio_chunks_dropped,
            audio_chunks_received=self.audio_chunks_received,
        )

    async def _send_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        try:
            while not self._closed:
                item = await self._send_queue.get()
                if item is None:
                    break
                if item.get("type") == "input_audio_buffer.append":
                    self._pending_audio -= 1
                try:
                    await ws.send(json.dumps(item))
                except Exception as e:
                    logger.error("OpenAI send failed", error=str(e), type=item.get("type"))
                    self._ready = False
                    break
        except asyncio.CancelledError:
            pass

    async def _receive_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        try:
            async for raw in ws:
                if self._closed:
                    break
                try:
                    event = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(event, dict):
                    continue
                try:
                    await self._dispatch(event)
                except Exception:
                    logger.exception("Realtime event handling failed", type=event.get("type"))
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("OpenAI receive loop failed", error=str(e))

        self._ready = False
        if not self._closed:
            logger.warning("OpenAI Realtime connection closed by remote")
            await self._handler.on_closed()

    async def _dispatch(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")

        if event_type in ("session.created", "session.updated"):
            session = event.get("session") or {}
            if isinstance(session, dict) and session.get("id"):
                self.session_id = session["id"]
            was_ready = self._ready
            self._ready = True
            if not was_ready:
                logger.info("OpenAI session ready", session_id=self.session_id, type=event_type)
                await self._handler.on_ready()
            return

        if event_type in ("response.audio.delta", "response.output_audio.delta"):
            delta = event.get("delta") or event.get("audio")
            if isinstance(delta, str) and delta:
                self.audio_chunks_received += 1
                await self._handler.on_audio_delta(delta)
            return

        if event_type == "response.output_item.added":
            item = event.get("item") or {}
            if isinstance(item, dict) and item.get("type") == "function_call":
                call_id = item.get("call_id")
                name = item.get("name")
                if isinstance(call_id, str) and call_id and isinstance(name, str) and name:
                    self._tool_calls[call_id] = _ToolCallState(name=name)
            return

        if event_type == "response.function_call_arguments.delta":
            call_id = event.get("call_id")
            delta = event.get("delta")
            if isinstance(call_id, str) and isinstance(delta, str) and call_id in self._tool_calls:
                self._tool_calls[call_id].arguments += delta
            return

        if event_type == "response.function_call_arguments.done":
            call_id = event.get("call_id")
            if not isinstance(call_id, str) or not call_id:
                logger.warning("Function call without call_id", details=event)
                return
            pending = self._tool_calls.pop(call_id, None)
            name = event.get("name") or (pending.name if pending else "")
            arguments = event.get("arguments")
            if not isinstance(arguments, str) or not arguments:
                arguments = pending.arguments if pending else ""
            await self._handler.on_tool_call(call_id, str(name), arguments)
            return

        if event_type == "conversation.item.input_audio_transcription.completed":
            await self._handler.on_transcript("user", str(event.get("transcript") or ""))
            return

        if event_type == "response.audio_transcript.done":
            await self._handler.on_transcript("assistant", str(event.get("transcript") or ""))
            return

        if event_type == "conversation.item.input_audio_transcription.failed":
            logger.error("Transcription failed", details=event.get("error") or event)
            return

        if event_type == "response.done":
            response = event.get("response") or {}
            if isinstance(response, dict) and response.get("status") == "failed":
                logger.error("Realtime response failed", details=response.get("status_details"))
            return

        if event_type == "error":
            logger.error("OpenAI Realtime error", details=event.get("error") or event)
            return

        if event_type in ("input_audio_buffer.speech_started", "input_audio_buffer.speech_stopped"):
            logger.debug("Caller speech", type=event_type)
            return
