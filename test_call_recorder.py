#!/usr/bin/env python3
"""Tests for the local call recorder.

Tests: tapping a stream, WAV output, idempotent finalize, never-started
       recorder, restart, retry after a failed write.

Run: python3 test_call_recorder.py
"""

import asyncio
import sys
import tempfile
import wave
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

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


class FakeStream:
    def __init__(self, sample_rate=16000, channels=1):
        self.sample_rate = sample_rate
        self.channels = channels
        self.subscribers = []

    def subscribe(self, cb):
        self.subscribers.append(cb)

    def unsubscribe(self, cb):
        if cb in self.subscribers:
            self.subscribers.remove(cb)

    def push(self, data):
        for cb in list(self.subscribers):
            cb(data)


# ======================================================================
# Test Group 1: Recording
# ======================================================================

@test("Recorder writes captured chunks as a WAV file")
def test_writes_wav():
    from call_recorder import CallRecorder
    with tempfile.TemporaryDirectory() as tmpdir:
        stream = FakeStream()
        recorder = CallRecorder(Path(tmpdir), name="call1")
        recorder.start(stream)
        assert recorder.recording
        stream.push(b"\x01\x00" * 8000)
        stream.push(b"\x02\x00" * 8000)
        asset = recorder.finalize()
        assert asset.path == Path(tmpdir) / "call1.wav"
        assert asset.mime_type == "audio/wav"
        assert asset.duration == 1.0
        assert asset.url.startswith("file://")
        with wave.open(str(asset.path), 'rb') as wf:
            assert wf.getframerate() == 16000
            assert wf.getnchannels() == 1
            assert wf.getsampwidth() == 2
            assert wf.getnframes() == 16000
        assert stream.subscribers == []


@test("finalize is idempotent and returns the same asset")
def test_finalize_idempotent():
    from call_recorder import CallRecorder
    with tempfile.TemporaryDirectory() as tmpdir:
        stream = FakeStream()
        recorder = CallRecorder(Path(tmpdir))
        recorder.start(stream)
        stream.push(b"\x00\x00" * 100)
        first = recorder.finalize()
        stream.push(b"\x00\x00" * 100)
        second = recorder.finalize()
        assert first is second
        assert len(list(Path(tmpdir).iterdir())) == 1


@test("A recorder that never started finalizes to None")
def test_never_started():
    from call_recorder import CallRecorder
    recorder = CallRecorder()
    assert recorder.finalize() is None
    assert recorder.finalize() is None


@test("Chunks arriving after stop are not recorded")
def test_stop_detaches():
    from call_recorder import CallRecorder
    with tempfile.TemporaryDirectory() as tmpdir:
        stream = FakeStream()
        recorder = CallRecorder(Path(tmpdir))
        recorder.start(stream)
        stream.push(b"\x00\x00" * 160)
        recorder.stop()
        assert not recorder.recording
        stream.push(b"\x00\x00" * 160)
        assert recorder.chunk_count == 1
        assert recorder.finalize().duration == 0.01


@test("An empty recording still finalizes")
def test_empty_recording():
    from call_recorder import CallRecorder
    with tempfile.TemporaryDirectory() as tmpdir:
        recorder = CallRecorder(Path(tmpdir))
        recorder.start(FakeStream())
        asset = recorder.finalize()
        assert asset is not None
        assert asset.duration == 0.0
        assert asset.path.exists()


@test("Starting again resets the recording")
def test_restart_resets():
    from call_recorder import CallRecorder
    with tempfile.TemporaryDirectory() as tmpdir:
        stream = FakeStream()
        recorder = CallRecorder(Path(tmpdir), name="again")
        recorder.start(stream)
        stream.push(b"\x00\x00" * 1600)
        recorder.finalize()
        recorder.start(stream)
        stream.push(b"\x00\x00" * 320)
        asset = recorder.finalize()
        assert asset.duration == 0.02
        assert len(stream.subscribers) == 0


@test("A failed write keeps the audio so finalize can retry")
def test_finalize_retry_after_write_error():
    from call_recorder import CallRecorder
    with tempfile.TemporaryDirectory() as tmpdir:
        blocker = Path(tmpdir) / "recordings"
        blocker.write_text("not a directory")
        stream = FakeStream()
        recorder = CallRecorder(blocker / "calls", name="retry")
        recorder.start(stream)
        stream.push(b"\x00\x00" * 1600)
        try:
            recorder.finalize()
        except OSError:
            pass
        else:
            raise AssertionError("finalize should fail while the directory is blocked")
        assert recorder.chunk_count == 1

        blocker.unlink()
        asset = recorder.finalize()
        assert asset.path == blocker / "calls" / "retry.wav"
        assert asset.duration == 0.1
        assert recorder.finalize() is asset


# ======================================================================
# Run all tests
# ======================================================================

if __name__ == "__main__":
    print("=" * 60)
    print("Call Recorder Tests")
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
