#!/usr/bin/env python3
"""
Live voice session: microphone -> Gemini Live -> gapless playback, with the
user and AI transcripts reconciled into turns.

One VoiceSession owns one connection at a time. Everything that touches
session state (playback cursor, active buffers, transcript buffers) runs on a
single actor task fed by one asyncio.Queue. Device threads and the websocket
reader only post into that queue.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from audio_codec import OUTPUT_SAMPLE_RATE, audio_level, decode_block_async
from audio_devices import AudioOutput
from capture import CapturePipeline
from errors import ChannelError, ConfigError, DecodeError, VoiceSessionError
from pipeline_frames import USER, FrameType, PipelineFrame
from playback_scheduler import PlaybackScheduler, ScheduledPlayback
from session_client import SessionClient, SessionConfig, get_api_key
from transcript_buffer import TurnAccumulator

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ConversationState(str, Enum):
    LISTENING = "listening"
    AI_SPEAKING = "ai_speaking"


@dataclass(frozen=True)
class SessionError:
    """What the UI shows: a category plus a human-readable message."""
    category: str
    message: str


@dataclass(frozen=True)
class SessionCallbacks:
    """Hooks handed over once per connect(). Any of them may be left out."""
    on_user_chunk: Callable[[str], None] | None = None
    on_user_turn_complete: Callable[[str], None] | None = None
    on_ai_chunk: Callable[[str], None] | None = None
    on_ai_turn_complete: Callable[[str], None] | None = None
    on_turn_complete: Callable[[], None] | None = None
    on_interrupted: Callable[[], None] | None = None
    on_audio_level: Callable[[float], None] | None = None
    on_speaking_state_change: Callable[[bool], None] | None = None
    on_status: Callable[[str], None] | None = None
    on_error: Callable[[SessionError], None] | None = None


def _default_output(loop):
    return AudioOutput(sample_rate=OUTPUT_SAMPLE_RATE, loop=loop)


def _default_capture(on_block, loop):
    return CapturePipeline(on_block, loop=loop)


class VoiceSession:
    """Full-duplex voice conversation with the Live endpoint."""

    def __init__(self, api_key=None, client_factory=SessionClient,
                 capture_factory=_default_capture, output_factory=_default_output,
                 decoder=decode_block_async):
        self._api_key = api_key
        self._client_factory = client_factory
        self._capture_factory = capture_factory
        self._output_factory = output_factory
        self._decoder = decoder

        self._status = SessionStatus.IDLE
        self._conversation_state = ConversationState.LISTENING
        self._error: SessionError | None = None
        self._config: SessionConfig | None = None
        self._callbacks = SessionCallbacks()

        # Per-connection resources (None while idle)
        self._client = None
        self._capture = None
        self._output = None
        self._scheduler: PlaybackScheduler | None = None
        self._frames: asyncio.Queue | None = None
        self._actor_task: asyncio.Task | None = None
        self._active = False

        self._turns = TurnAccumulator()

    # ── Observable state ───────────────────────────────────────────

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def error(self) -> SessionError | None:
        return self._error

    @property
    def is_connected(self) -> bool:
        return self._status is SessionStatus.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self._status is SessionStatus.CONNECTING

    @property
    def conversation_state(self) -> ConversationState:
        return self._conversation_state

    @property
    def config(self) -> SessionConfig | None:
        return self._config

    @property
    def input_analyser(self):
        return self._capture.analyser if self._capture else None

    @property
    def output_analyser(self):
        return self._output.analyser if self._output else None

    @property
    def output(self):
        return self._output

    @property
    def scheduler(self) -> PlaybackScheduler | None:
        return self._scheduler

    @property
    def turns(self) -> TurnAccumulator:
        return self._turns

    def _set_status(self, status: SessionStatus):
        if status is self._status:
            return
        logger.info("Session status: %s -> %s", self._status.value, status.value)
        self._status = status
        self._fire("on_status", status.value)

    def _fire(self, name, *args):
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Session callback %s failed", name)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def connect(self, config: SessionConfig | None = None,
                      callbacks: SessionCallbacks | None = None) -> bool:
        """Start a session. Returns False if it did not get as far as the channel."""
        if self._status in (SessionStatus.CONNECTING, SessionStatus.CONNECTED):
            logger.warning("connect() ignored: session already %s", self._status.value)
            return False

        self._config = config or SessionConfig()
        self._callbacks = callbacks or SessionCallbacks()

        api_key = self._api_key or get_api_key()
        if not api_key:
            await self._fail(ConfigError("API key not found in environment variables."))
            return False

        self._error = None
        self._turns.reset()
        self._conversation_state = ConversationState.LISTENING
        self._set_status(SessionStatus.CONNECTING)

        loop = asyncio.get_running_loop()
        self._frames = asyncio.Queue()
        self._active = True
        client = self._client_factory(api_key, self._post_frame)
        self._client = client

        try:
            # Mic first: if it can't be had, nothing else gets opened
            self._capture = self._capture_factory(self._on_capture_block, loop)
            self._capture.start()
            self._output = self._output_factory(loop)
            self._output.open()
            self._scheduler = PlaybackScheduler(self._output, self._on_speaking_change)
            self._actor_task = asyncio.create_task(self._run_actor())
            await client.open(self._config)
        except VoiceSessionError as e:
            await self._fail(e)
            return False
        except Exception as e:
            logger.exception("Unexpected failure while connecting")
            await self._fail(ChannelError(detail=str(e)))
            return False

        if self._client is not client:
            # disconnect() ran while the socket was opening
            await client.close()
            return False
        return True

    async def disconnect(self):
        """Tear the session down. Safe to call in any state, any number of times."""
        await self._cleanup()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self._cleanup()

    async def _fail(self, err: VoiceSessionError):
        self._error = SessionError(err.category, err.message)
        logger.error("Session error [%s]: %s", err.category,
                     getattr(err, "detail", "") or err.message)
        self._set_status(SessionStatus.ERROR)
        self._fire("on_error", self._error)
        if self._active:
            await self._cleanup()
        else:
            self._set_status(SessionStatus.IDLE)

    async def _cleanup(self):
        if not self._active:
            return
        self._active = False

        if self._scheduler is not None:
            self._scheduler.reset()
        if self._capture is not None:
            self._capture.stop()
        if self._output is not None:
            self._output.close()

        client, self._client = self._client, None
        actor, self._actor_task = self._actor_task, None
        self._scheduler = None
        self._capture = None
        self._output = None
        self._frames = None

        if client is not None:
            await client.close()

        self._turns.reset()
        self._conversation_state = ConversationState.LISTENING
        if actor is not None and actor is not asyncio.current_task() and not actor.done():
            actor.cancel()

        self._set_status(SessionStatus.IDLE)
        logger.info("Session closed")

    # ── Inputs from other threads/tasks ────────────────────────────

    def _post_frame(self, frame: PipelineFrame):
        if self._frames is not None:
            self._frames.put_nowait(frame)

    def _on_capture_block(self, block):
        if self._client is not None:
            self._client.send(block)

    def _on_playback_ended(self, playback: ScheduledPlayback):
        self._post_frame(PipelineFrame(FrameType.PLAYBACK_ENDED, playback))

    def _on_speaking_change(self, speaking: bool):
        self._conversation_state = (ConversationState.AI_SPEAKING if speaking
                                    else ConversationState.LISTENING)
        logger.debug("AI %s speaking", "started" if speaking else "stopped")
        self._fire("on_speaking_state_change", speaking)

    # ── Actor ──────────────────────────────────────────────────────

    async def _run_actor(self):
        frames = self._frames
        while True:
            frame = await frames.get()
            try:
                await self._handle_frame(frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Session actor failed handling %s", frame.type.name)
                await self._fail(ChannelError(detail=str(e)))
                return
            if not self._active:
                return

    async def _handle_frame(self, frame: PipelineFrame):
        if frame.type is FrameType.OPENED:
            self._set_status(SessionStatus.CONNECTED)

        elif frame.type is FrameType.CLOSED:
            await self._cleanup()

        elif frame.type is FrameType.ERROR:
            err = frame.data if isinstance(frame.data, VoiceSessionError) else ChannelError()
            await self._fail(err)

        elif frame.type is FrameType.TRANSCRIPT_CHUNK:
            if frame.role == USER:
                self._turns.add_user_text(frame.data)
                self._fire("on_user_chunk", frame.data)
            else:
                self._turns.add_ai_text(frame.data)
                self._fire("on_ai_chunk", frame.data)

        elif frame.type is FrameType.AUDIO_CHUNK:
            await self._handle_audio_chunk(frame.data)

        elif frame.type is FrameType.TURN_COMPLETE:
            self._fire("on_ai_turn_complete", self._turns.complete_ai_turn())
            self._fire("on_turn_complete")

        elif frame.type is FrameType.INTERRUPTED:
            logger.info("Interrupted, clearing playback")
            self._scheduler.interrupt()
            self._turns.interrupt()
            self._fire("on_interrupted")

        elif frame.type is FrameType.PLAYBACK_ENDED:
            self._scheduler.finish(frame.data)

    async def _handle_audio_chunk(self, data):
        if self._scheduler.is_idle:
            user_text = self._turns.ai_audio_started()
            if user_text:
                self._fire("on_user_turn_complete", user_text)

        try:
            buffer = await self._decoder(data, OUTPUT_SAMPLE_RATE, 1)
        except DecodeError as e:
            logger.warning("Dropping undecodable audio chunk: %s", e)
            return

        if self._scheduler is None:
            return  # torn down while decoding

        self._scheduler.schedule(buffer, on_ended=self._on_playback_ended)
        self._fire("on_audio_level", audio_level(buffer))
