#!/usr/bin/env python3
"""Tests for SessionClient -- the Live channel, against a fake websocket.

No network or API key is used.

Run: python3 test_session_client.py
"""

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import patch

import websockets

sys.path.insert(0, str(Path(__file__).parent))

from audio_codec import AudioBlock
from errors import ChannelError
from pipeline_frames import ASSISTANT, USER, FrameType
from session_client import (SessionClient, SessionConfig, build_setup_message,
                            get_api_key, parse_server_message)

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    """Decorator to register and run a test."""
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} — {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} — {type(e).__name__}: {e}")


# ── Helpers ───────────────────────────────────────────────────────

_END = object()


class FakeWebSocket:
    """Async-iterable socket fed by the test."""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.close_calls = 0

    async def send(self, message):
        self.sent.append(json.loads(message))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self):
        self.close_calls += 1

    def push(self, data):
        self.incoming.put_nowait(json.dumps(data))


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_client(ws=None):
    ws = ws or FakeWebSocket()
    frames = []
    connect_kwargs = {}

    async def fake_connect(url, **kwargs):
        connect_kwargs.update(kwargs, url=url)
        return ws

    client = SessionClient("test-key", frames.append, connect=fake_connect)
    return client, ws, frames, connect_kwargs


async def open_client(config=None):
    client, ws, frames, kwargs = make_client()
    await client.open(config or SessionConfig())
    ws.push({"setupComplete": {}})
    await settle()
    return client, ws, frames, kwargs


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Message parsing
# ══════════════════════════════════════════════════════════════════

@test("One server message splits into frames in wire order")
def test_parse_order():
    frames = parse_server_message({"serverContent": {
        "interrupted": True,
        "turnComplete": True,
        "modelTurn": {"parts": [{"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": "AAA="}}]},
        "outputTranscription": {"text": "Hello"},
        "inputTranscription": {"text": "hi"},
    }})
    assert [f.type for f in frames] == [
        FrameType.TRANSCRIPT_CHUNK, FrameType.TRANSCRIPT_CHUNK,
        FrameType.AUDIO_CHUNK, FrameType.TURN_COMPLETE, FrameType.INTERRUPTED,
    ]
    assert frames[0].role == USER and frames[0].data == "hi"
    assert frames[1].role == ASSISTANT and frames[1].data == "Hello"
    assert frames[2].data == "AAA="


@test("Every audio part becomes its own chunk")
def test_parse_multiple_parts():
    frames = parse_server_message({"serverContent": {"modelTurn": {"parts": [
        {"inlineData": {"mimeType": "audio/pcm", "data": "AAA="}},
        {"text": "thinking"},
        {"inlineData": {"mimeType": "audio/pcm", "data": "BBB="}},
    ]}}})
    assert [f.data for f in frames] == ["AAA=", "BBB="]


@test("Messages without serverContent produce no frames")
def test_parse_other():
    assert parse_server_message({"usageMetadata": {"totalTokenCount": 5}}) == []
    assert parse_server_message({"serverContent": {"generationComplete": True}}) == []
    assert parse_server_message({"serverContent": {"inputTranscription": {"text": ""}}}) == []


@test("Setup carries model, voice, instruction and transcription requests")
def test_setup_message():
    setup = build_setup_message(SessionConfig(instruction_text="Be brief.", voice_id="Puck"))["setup"]
    assert setup["model"].startswith("models/")
    assert setup["generationConfig"]["responseModalities"] == ["AUDIO"]
    voice = setup["generationConfig"]["speechConfig"]["voiceConfig"]["prebuiltVoiceConfig"]
    assert voice["voiceName"] == "Puck"
    assert setup["systemInstruction"]["parts"][0]["text"] == "Be brief."
    assert "inputAudioTranscription" in setup
    assert "outputAudioTranscription" in setup


@test("API key comes from the environment first")
def test_api_key_env():
    with patch.dict("os.environ", {"GEMINI_API_KEY": "env-key"}, clear=True):
        assert get_api_key() == "env-key"


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Handshake and sending
# ══════════════════════════════════════════════════════════════════

@test("send() before the channel opens drops silently")
def test_send_before_open():
    client, ws, frames, _ = make_client()
    assert client.send(AudioBlock("AAAA")) is False
    assert client.blocks_dropped == 1
    assert ws.sent == []


@test("Blocks sent during the handshake are dropped, not queued")
async def test_send_during_handshake():
    client, ws, frames, kwargs = make_client()
    await client.open(SessionConfig())
    assert kwargs["additional_headers"] == {"x-goog-api-key": "test-key"}
    assert list(ws.sent[0]) == ["setup"]

    assert client.send(AudioBlock("AAAA")) is False
    ws.push({"setupComplete": {}})
    await settle()
    assert client.is_open
    assert [f.type for f in frames] == [FrameType.OPENED]
    assert len(ws.sent) == 1, "stale audio must not be flushed after open"
    await client.close()


@test("Once open, blocks reach the socket as realtime audio")
async def test_send_after_open():
    client, ws, frames, _ = await open_client()
    assert client.send(AudioBlock("AAAA")) is True
    await settle()
    audio = ws.sent[-1]["realtimeInput"]["audio"]
    assert audio == {"data": "AAAA", "mimeType": "audio/pcm;rate=16000"}
    assert client.blocks_sent == 1
    await client.close()


@test("Visual context goes out right after setup, before any audio")
async def test_visual_context():
    client, ws, frames, _ = await open_client(SessionConfig(visual_context="/9j/AAAA"))
    client.send(AudioBlock("AAAA"))
    await settle()
    assert "setup" in ws.sent[0]
    assert ws.sent[1]["realtimeInput"]["video"] == {"data": "/9j/AAAA", "mimeType": "image/jpeg"}
    assert "audio" in ws.sent[2]["realtimeInput"]
    await client.close()


@test("A full outbound queue drops instead of blocking")
async def test_send_queue_full():
    ws = FakeWebSocket()

    async def fake_connect(url, **kwargs):
        return ws

    client = SessionClient("k", lambda f: None, connect=fake_connect, send_queue_size=2)
    await client.open(SessionConfig())
    ws.push({"setupComplete": {}})
    await settle()
    results = [client.send(AudioBlock("AAAA")) for _ in range(5)]
    assert results == [True, True, False, False, False]
    await client.close()


@test("Socket failure while opening raises ChannelError")
async def test_open_failure():
    async def failing_connect(url, **kwargs):
        raise OSError("connection refused")

    client = SessionClient("k", lambda f: None, connect=failing_connect)
    try:
        await client.open(SessionConfig())
        assert False, "expected ChannelError"
    except ChannelError as e:
        assert e.message == "Connection error occurred."
        assert "refused" in e.detail
    assert not client.is_open


# ══════════════════════════════════════════════════════════════════
# Test Group 3: Inbound events and lifecycle
# ══════════════════════════════════════════════════════════════════

@test("Inbound events are delivered in arrival order")
async def test_inbound_order():
    client, ws, frames, _ = await open_client()
    ws.push({"serverContent": {"inputTranscription": {"text": "hi"}}})
    ws.push({"serverContent": {"modelTurn": {"parts": [{"inlineData": {"mimeType": "audio/pcm", "data": "AAA="}}]}}})
    ws.incoming.put_nowait(json.dumps({"serverContent": {"turnComplete": True}}).encode())
    await settle()
    assert [f.type for f in frames] == [
        FrameType.OPENED, FrameType.TRANSCRIPT_CHUNK, FrameType.AUDIO_CHUNK, FrameType.TURN_COMPLETE,
    ]
    await client.close()


@test("Clean remote close reports CLOSED")
async def test_remote_close():
    client, ws, frames, _ = await open_client()
    ws.incoming.put_nowait(_END)
    await settle()
    assert frames[-1].type == FrameType.CLOSED
    assert not client.is_open
    assert client.send(AudioBlock("AAAA")) is False


@test("Abnormal close reports ERROR with a ChannelError")
async def test_remote_error():
    client, ws, frames, _ = await open_client()
    ws.incoming.put_nowait(websockets.exceptions.ConnectionClosedError(None, None))
    await settle()
    assert frames[-1].type == FrameType.ERROR
    assert isinstance(frames[-1].data, ChannelError)


@test("Garbage on the wire is a protocol error")
async def test_protocol_error():
    client, ws, frames, _ = await open_client()
    ws.incoming.put_nowait("{not json")
    await settle()
    assert frames[-1].type == FrameType.ERROR
    assert "protocol" in frames[-1].data.detail


@test("A JSON message of the wrong shape is a protocol error")
async def test_wrong_shape_message():
    for message in ([1, 2], {"serverContent": "x"}, {"serverContent": {"modelTurn": {"parts": "AAA="}}}):
        client, ws, frames, _ = await open_client()
        ws.push(message)
        await settle()
        assert [f.type for f in frames] == [FrameType.OPENED, FrameType.ERROR], message
        assert isinstance(frames[-1].data, ChannelError)
        assert "protocol" in frames[-1].data.detail
        assert client.is_open is False
        await client.close()


@test("Null entries in the parts list are skipped")
def test_parse_null_part():
    frames = parse_server_message({"serverContent": {"modelTurn": {"parts": [
        None, {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": "AAA="}},
    ]}}})
    assert [f.type for f in frames] == [FrameType.AUDIO_CHUNK]


@test("A repeated setupComplete is ignored")
async def test_repeated_setup_complete():
    client, ws, frames, _ = await open_client()
    sender = client._sender_task
    ws.push({"setupComplete": {}})
    await settle()
    assert [f.type for f in frames] == [FrameType.OPENED]
    assert client._sender_task is sender
    assert client.send(AudioBlock("AAAA")) is True
    await settle()
    audio_sent = [m for m in ws.sent if "realtimeInput" in m]
    assert len(audio_sent) == 1
    await client.close()


@test("Local close is idempotent and reports nothing")
async def test_local_close():
    client, ws, frames, _ = await open_client()
    await client.close()
    await client.close()
    await settle()
    assert ws.close_calls == 1
    assert [f.type for f in frames] == [FrameType.OPENED]
    assert client.send(AudioBlock("AAAA")) is False


# ══════════════════════════════════════════════════════════════════
# Run all tests
# ══════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    print("=" * 60)
    print("SessionClient Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
