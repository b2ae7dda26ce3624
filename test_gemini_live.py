#!/usr/bin/env python3
"""Tests for the Gemini Live adapter.

Tests: setup message, server message translation and ordering, the
       receive loop's close/error handling, outbound audio frames, and
       provider connect/validate. The websocket is faked; no network.

Run: python3 test_gemini_live.py
"""

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

sys.path.insert(0, str(Path(__file__).parent))

from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
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
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


class FakeWebSocket:
    """Yields canned server messages, then ends (optionally with an error)."""

    def __init__(self, messages=(), close_exc=None):
        self.messages = [m if isinstance(m, (str, bytes)) else json.dumps(m) for m in messages]
        self.close_exc = close_exc
        self.sent = []
        self.closed = False

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self.messages:
            yield message
        if self.close_exc:
            raise self.close_exc


SERVER_CONTENT = {
    "serverContent": {
        "modelTurn": {"parts": [{"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": "AAA="}}]},
        "turnComplete": True,
        "inputTranscription": {"text": "hi"},
        "outputTranscription": {"text": "Hello"},
    }
}


# ======================================================================
# Test Group 1: Wire format
# ======================================================================

@test("Setup message carries model, voice, persona and transcription flags")
def test_setup_message():
    from gemini_live import build_setup_message
    from session_events import LiveConnectConfig
    msg = build_setup_message(LiveConnectConfig("Be a skeptical CEO."), "gemini-live-test")
    setup = msg["setup"]
    assert setup["model"] == "models/gemini-live-test"
    assert setup["generationConfig"]["responseModalities"] == ["AUDIO"]
    voice = setup["generationConfig"]["speechConfig"]["voiceConfig"]["prebuiltVoiceConfig"]
    assert voice["voiceName"] == "Zephyr"
    assert setup["systemInstruction"]["parts"][0]["text"] == "Be a skeptical CEO."
    assert setup["inputAudioTranscription"] == {}
    assert setup["outputAudioTranscription"] == {}


@test("Setup message honors per-call model and disabled transcription")
def test_setup_message_overrides():
    from gemini_live import build_setup_message
    from session_events import LiveConnectConfig
    config = LiveConnectConfig("x", input_transcription=False, model="models/other")
    setup = build_setup_message(config, "default")["setup"]
    assert setup["model"] == "models/other"
    assert "inputAudioTranscription" not in setup


@test("serverContent parts become events in a fixed order")
def test_parse_order():
    from gemini_live import parse_server_message
    from session_events import EventType
    events = parse_server_message(SERVER_CONTENT)
    assert [e.type for e in events] == [
        EventType.TRANSCRIPTION, EventType.TRANSCRIPTION,
        EventType.TURN_COMPLETE, EventType.AUDIO,
    ]
    assert (events[0].speaker, events[0].text) == ("ai", "Hello")
    assert (events[1].speaker, events[1].text) == ("user", "hi")
    assert events[3].data == "AAA="
    assert events[3].mime_type == "audio/pcm;rate=24000"


@test("setupComplete becomes OPEN; empty and unknown messages yield nothing")
def test_parse_setup_complete():
    from gemini_live import parse_server_message
    from session_events import EventType
    assert [e.type for e in parse_server_message({"setupComplete": {}})] == [EventType.OPEN]
    assert parse_server_message({}) == []
    assert parse_server_message({"usageMetadata": {"totalTokenCount": 3}}) == []
    assert parse_server_message({"serverContent": {"outputTranscription": {"text": ""}}}) == []


@test("Server error payload becomes ERROR")
def test_parse_error():
    from gemini_live import parse_server_message
    from session_events import EventType
    events = parse_server_message({"error": {"message": "quota exceeded"}})
    assert events[0].type is EventType.ERROR
    assert events[0].cause == "quota exceeded"


# ======================================================================
# Test Group 2: Session
# ======================================================================

async def run_session(ws):
    from gemini_live import GeminiLiveSession
    events = []
    session = GeminiLiveSession(ws, events.append)
    session.start()
    await session._receiver
    return session, events


@test("Receive loop emits OPEN, content events, then CLOSED on normal end")
async def test_receive_loop_normal():
    from session_events import EventType
    ws = FakeWebSocket([{"setupComplete": {}}, "not json", SERVER_CONTENT])
    _, events = await run_session(ws)
    types = [e.type for e in events]
    assert types[0] is EventType.OPEN
    assert types[-1] is EventType.CLOSED
    assert len(types) == 6


@test("Abnormal close becomes ERROR with the close reason")
async def test_receive_loop_abnormal():
    from session_events import EventType
    ws = FakeWebSocket([{"setupComplete": {}}],
                       close_exc=ConnectionClosedError(Close(1011, "backend crashed"), None))
    _, events = await run_session(ws)
    assert events[-1].type is EventType.ERROR
    assert events[-1].cause == "backend crashed"


@test("Abnormal close after a local close is reported as CLOSED")
async def test_receive_loop_closing():
    from gemini_live import GeminiLiveSession
    from session_events import EventType
    events = []
    ws = FakeWebSocket(close_exc=ConnectionClosedError(None, None))
    session = GeminiLiveSession(ws, events.append)
    session.close()
    session.start()
    await session._receiver
    await asyncio.sleep(0)
    assert [e.type for e in events] == [EventType.CLOSED]
    assert ws.closed


@test("send_audio queues a realtimeInput frame without awaiting")
async def test_send_audio():
    from gemini_live import GeminiLiveSession
    ws = FakeWebSocket()
    session = GeminiLiveSession(ws, lambda e: None)
    result = session.send_audio("AAAA", "audio/pcm;rate=16000")
    assert result is None
    await asyncio.sleep(0)
    assert ws.sent == [{"realtimeInput": {"audio": {"data": "AAAA",
                                                    "mimeType": "audio/pcm;rate=16000"}}}]
    assert session.frames_sent == 1


@test("send_audio after close is dropped; close is idempotent")
async def test_send_after_close():
    from gemini_live import GeminiLiveSession
    ws = FakeWebSocket()
    session = GeminiLiveSession(ws, lambda e: None)
    session.close()
    session.close()
    session.send_audio("AAAA", "audio/pcm;rate=16000")
    await asyncio.sleep(0)
    assert ws.sent == []
    assert ws.closed


@test("An exception in the event handler doesn't kill the receive loop")
async def test_handler_error_isolated():
    from gemini_live import GeminiLiveSession
    from session_events import EventType
    seen = []

    def handler(event):
        seen.append(event.type)
        if event.type is EventType.OPEN:
            raise RuntimeError("boom")

    session = GeminiLiveSession(FakeWebSocket([{"setupComplete": {}}]), handler)
    session.start()
    await session._receiver
    assert seen == [EventType.OPEN, EventType.CLOSED]


# ======================================================================
# Test Group 3: Provider
# ======================================================================

@test("Provider without an API key fails validation")
def test_provider_validate():
    from errors import ConfigurationError
    from gemini_live import GeminiLiveProvider
    provider = GeminiLiveProvider(api_key="")
    try:
        provider.validate()
    except ConfigurationError as e:
        assert "API key is not configured" in str(e)
    else:
        raise AssertionError("validate() should raise")


@test("connect sends setup first and authenticates with the API key header")
async def test_provider_connect():
    from gemini_live import GeminiLiveProvider
    from session_events import LiveConnectConfig
    ws = FakeWebSocket([{"setupComplete": {}}])
    connect = AsyncMock(return_value=ws)
    events = []
    with patch("gemini_live.websockets.connect", connect):
        provider = GeminiLiveProvider(api_key="k3y", model="live-model")
        session = await provider.connect(LiveConnectConfig("persona"), events.append)
        await session._receiver
    assert connect.call_args.kwargs["additional_headers"] == {"x-goog-api-key": "k3y"}
    assert ws.sent[0]["setup"]["model"] == "models/live-model"
    assert events[0].type.name == "OPEN"


@test("Transport failure on connect raises RemoteSessionError")
async def test_provider_connect_fails():
    from errors import RemoteSessionError
    from gemini_live import GeminiLiveProvider
    from session_events import LiveConnectConfig
    with patch("gemini_live.websockets.connect", AsyncMock(side_effect=OSError("unreachable"))):
        try:
            await GeminiLiveProvider(api_key="k").connect(LiveConnectConfig("p"), lambda e: None)
        except RemoteSessionError as e:
            assert "unreachable" in str(e)
        else:
            raise AssertionError("connect() should raise")


@test("A connection closed during setup is released and raises RemoteSessionError")
async def test_provider_setup_closed():
    from errors import RemoteSessionError
    from gemini_live import GeminiLiveProvider
    from session_events import LiveConnectConfig

    class RejectingWebSocket(FakeWebSocket):
        async def send(self, message):
            raise ConnectionClosedError(Close(1008, "bad setup"), None)

    ws = RejectingWebSocket()
    with patch("gemini_live.websockets.connect", AsyncMock(return_value=ws)):
        try:
            await GeminiLiveProvider(api_key="k").connect(LiveConnectConfig("p"), lambda e: None)
        except RemoteSessionError as e:
            assert "closed during setup" in str(e)
        else:
            raise AssertionError("connect() should raise")
    assert ws.closed


# ======================================================================
# Run all tests
# ======================================================================

if __name__ == "__main__":
    print("=" * 60)
    print("Gemini Live Adapter Tests")
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
