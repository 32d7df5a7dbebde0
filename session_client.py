"""
Gemini Live streaming channel: one websocket per session carrying microphone
audio out and AI audio, transcripts and turn signals back.

Inbound messages are split into PipelineFrames and handed, in wire order, to
the `on_frame` callable (the session actor's queue).
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import websockets
import websockets.exceptions

from audio_codec import AudioBlock
from errors import ChannelError
from pipeline_frames import ASSISTANT, USER, FrameType, PipelineFrame

logger = logging.getLogger(__name__)

LIVE_URL = ("wss://generativelanguage.googleapis.com/ws/"
            "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent")
DEFAULT_MODEL = "gemini-2.5-flash-native-audio-preview-09-2025"
DEFAULT_VOICE = "Kore"
DEFAULT_INSTRUCTION = ("You are a helpful, witty, and concise AI assistant. "
                       "Keep your responses short and conversational.")

SEND_QUEUE_SIZE = 100


@dataclass(frozen=True)
class SessionConfig:
    """Snapshot taken at connect time; never changes for the session's lifetime."""
    instruction_text: str = DEFAULT_INSTRUCTION
    voice_id: str = DEFAULT_VOICE
    visual_context: str | None = None  # base64 image
    visual_context_mime_type: str = "image/jpeg"
    model: str = DEFAULT_MODEL


def get_api_key():
    """Get the Gemini API key from the environment or a key file."""
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "API_KEY"):
        key = os.environ.get(var)
        if key:
            return key
    for path in [
        Path.home() / ".config" / "gemini" / "api_key",
    ]:
        if path.exists():
            return path.read_text().strip()
    return None


def build_setup_message(config: SessionConfig) -> dict:
    model = config.model if config.model.startswith("models/") else f"models/{config.model}"
    return {
        "setup": {
            "model": model,
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": config.voice_id}},
                },
            },
            "systemInstruction": {"parts": [{"text": config.instruction_text}]},
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def build_audio_message(block: AudioBlock) -> dict:
    return {"realtimeInput": {"audio": {"data": block.data, "mimeType": block.mime_type}}}


def build_image_message(data: str, mime_type: str) -> dict:
    return {"realtimeInput": {"video": {"data": data, "mimeType": mime_type}}}


def _section(value, where) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{where} is {type(value).__name__}, expected object")
    return value


def parse_server_message(data: dict) -> list[PipelineFrame]:
    """Split one server message into frames.

    Order within a message: user transcript, AI transcript, audio,
    turn complete, interrupted. Raises ValueError when the message is not
    shaped like a server message.
    """
    frames = []
    content = _section(_section(data, "message").get("serverContent"), "serverContent")
    if not content:
        return frames

    user_text = _section(content.get("inputTranscription"), "inputTranscription").get("text")
    if user_text:
        frames.append(PipelineFrame(FrameType.TRANSCRIPT_CHUNK, str(user_text), {"role": USER}))

    ai_text = _section(content.get("outputTranscription"), "outputTranscription").get("text")
    if ai_text:
        frames.append(PipelineFrame(FrameType.TRANSCRIPT_CHUNK, str(ai_text), {"role": ASSISTANT}))

    parts = _section(content.get("modelTurn"), "modelTurn").get("parts") or []
    if not isinstance(parts, list):
        raise ValueError(f"modelTurn.parts is {type(parts).__name__}, expected list")
    for part in parts:
        inline = _section(_section(part, "part").get("inlineData"), "inlineData")
        mime_type = inline.get("mimeType") or "audio/pcm"
        if inline.get("data") and str(mime_type).startswith("audio/"):
            frames.append(PipelineFrame(FrameType.AUDIO_CHUNK, inline["data"],
                                        {"mime_type": inline.get("mimeType")}))

    if content.get("turnComplete"):
        frames.append(PipelineFrame(FrameType.TURN_COMPLETE))

    if content.get("interrupted"):
        frames.append(PipelineFrame(FrameType.INTERRUPTED))

    return frames


class SessionClient:
    """Bidirectional channel to the Live endpoint.

    The channel only counts as open once the server acknowledges setup.
    Until then (and after close) send() drops audio on the floor.
    """

    def __init__(self, api_key, on_frame, url=LIVE_URL, connect=None,
                 send_queue_size=SEND_QUEUE_SIZE):
        self.api_key = api_key
        self.on_frame = on_frame
        self.url = url
        self._connect = connect or websockets.connect
        self._send_queue_size = send_queue_size

        self.ws = None
        self.config: SessionConfig | None = None
        self._open = False
        self._closing = False
        self._send_q: asyncio.Queue | None = None
        self._reader_task = None
        self._sender_task = None

        self.blocks_sent = 0
        self.blocks_dropped = 0

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, config: SessionConfig):
        """Connect and send setup. Raises ChannelError if the socket can't be opened."""
        self.config = config
        self._closing = False
        try:
            self.ws = await self._connect(
                self.url,
                additional_headers={"x-goog-api-key": self.api_key},
                ping_interval=20,
                max_size=None,
            )
            await self.ws.send(json.dumps(build_setup_message(config)))
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            await self.close()
            raise ChannelError(detail=str(e)) from e

        logger.info("Live channel connecting (model=%s, voice=%s)", config.model, config.voice_id)
        self._reader_task = asyncio.create_task(self._read_loop())

    def send(self, block: AudioBlock) -> bool:
        """Fire-and-forget. Returns False when the block was dropped."""
        if not self._open or self._send_q is None:
            self.blocks_dropped += 1
            return False
        try:
            self._send_q.put_nowait(json.dumps(build_audio_message(block)))
        except asyncio.QueueFull:
            self.blocks_dropped += 1
            return False
        return True

    def _handle_setup_complete(self):
        if self._open:
            logger.warning("Ignoring repeated setupComplete")
            return
        self._send_q = asyncio.Queue(maxsize=self._send_queue_size)
        if self.config and self.config.visual_context:
            self._send_q.put_nowait(json.dumps(build_image_message(
                self.config.visual_context, self.config.visual_context_mime_type)))
        self._sender_task = asyncio.create_task(self._send_loop())
        self._open = True
        logger.info("Live channel opened")
        self.on_frame(PipelineFrame(FrameType.OPENED))

    async def _send_loop(self):
        while True:
            message = await self._send_q.get()
            try:
                await self.ws.send(message)
            except websockets.exceptions.ConnectionClosed:
                # The reader reports the close
                return
            self.blocks_sent += 1
            if self.blocks_sent % 200 == 0:
                logger.debug("Sent %d audio blocks", self.blocks_sent)

    async def _read_loop(self):
        try:
            async for message in self.ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8")
                data = json.loads(message)
                if not isinstance(data, dict):
                    raise ValueError(f"message is {type(data).__name__}, expected object")

                if "setupComplete" in data:
                    self._handle_setup_complete()
                    continue
                if "goAway" in data:
                    logger.warning("Server going away: %s", data["goAway"])

                for frame in parse_server_message(data):
                    self.on_frame(frame)
        except websockets.exceptions.ConnectionClosedError as e:
            self._report(PipelineFrame(FrameType.ERROR, ChannelError(detail=str(e))))
        except ValueError as e:
            # Undecodable or wrongly shaped message (JSONDecodeError and
            # UnicodeDecodeError are ValueErrors too)
            logger.error("Protocol error on live channel: %s", e)
            self._report(PipelineFrame(FrameType.ERROR, ChannelError(detail=f"protocol error: {e}")))
        else:
            self._report(PipelineFrame(FrameType.CLOSED))
        finally:
            self._open = False

    def _report(self, frame: PipelineFrame):
        """Lifecycle frames are suppressed once we are closing the channel ourselves."""
        self._open = False
        if self._closing:
            return
        if frame.type is FrameType.CLOSED:
            logger.info("Live channel closed by remote")
        else:
            logger.error("Live channel error: %s", frame.data.detail)
        self.on_frame(frame)

    async def close(self):
        """Idempotent local close."""
        self._closing = True
        self._open = False
        current = asyncio.current_task()
        for task in (self._sender_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._sender_task = None
        self._reader_task = None
        self._send_q = None
        if self.ws is not None:
            ws, self.ws = self.ws, None
            try:
                await ws.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning("Live channel close error: %s", e)
            logger.info("Live channel disconnected (%d sent, %d dropped)",
                        self.blocks_sent, self.blocks_dropped)
