"""Tests for the transcription pipeline."""

import asyncio
import time

import numpy as np
import pytest

from voice_agent._types import AudioChunk, TranscriptFragment
from voice_agent.audio_source import PermissionDenied
from voice_agent.config import SessionConfig
from voice_agent.pipeline import TranscriptionPipeline
from voice_agent.session import SessionAlreadyActive, SessionState, TranscriptionSession
from voice_agent.transcriber import TranscriptionFailed


def make_chunk(source: str = "microphone", captured_at: float = 0.0) -> AudioChunk:
    return AudioChunk(
        data=np.zeros(16, dtype=np.float32).tobytes(),
        sample_rate=16000,
        channels=1,
        captured_at=captured_at,
        source=source,
    )


class FakeCapture:
    def __init__(self, start_error: Exception | None = None, stop_delay: float = 0.0):
        self.on_chunk = None
        self.running = False
        self.aborted = False
        self.start_error = start_error
        self.stop_delay = stop_delay

    @property
    def active_sources(self):
        return ["microphone"] if self.running else []

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.running = True
        return ["microphone", "system"]

    def stop(self):
        time.sleep(self.stop_delay)
        self.running = False

    def abort(self):
        self.aborted = True
        self.running = False


class FakeTranscriber:
    def __init__(self, results=None, gate: asyncio.Event | None = None):
        self.results = list(results or [])
        self.gate = gate
        self.calls: list[AudioChunk] = []

    @property
    def busy(self):
        return False

    async def transcribe(self, chunk):
        self.calls.append(chunk)
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        return result


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_pipeline(capture=None, transcriber=None, config=None):
    events = []
    pipeline = TranscriptionPipeline(
        capture or FakeCapture(),
        transcriber or FakeTranscriber(),
        TranscriptionSession(),
        emit=events.append,
        config=config or SessionConfig(stop_grace_period=0.2, hard_stop_timeout=1.0),
    )
    return pipeline, events


class TestPipelineStart:
    """Tests for start()."""

    def test_wires_capture_callback(self):
        """Test the pipeline registers itself as the chunk consumer."""
        capture = FakeCapture()
        pipeline, _ = make_pipeline(capture=capture)
        assert capture.on_chunk == pipeline.submit

    @pytest.mark.asyncio
    async def test_start_emits_started(self):
        """Test start moves to RECORDING and reports active sources."""
        pipeline, events = make_pipeline()

        session_id = await pipeline.start()

        assert pipeline.session.state is SessionState.RECORDING
        assert events[0].type == "started"
        assert events[0].data == {"session_id": session_id, "sources": ["microphone", "system"]}
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        """Test a second start while recording is rejected."""
        pipeline, _ = make_pipeline()
        await pipeline.start()

        with pytest.raises(SessionAlreadyActive):
            await pipeline.start()
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_start_failure_resets_session(self):
        """Test capture failure emits an error and returns to IDLE."""
        capture = FakeCapture(start_error=PermissionDenied("Microphone access denied"))
        pipeline, events = make_pipeline(capture=capture)

        with pytest.raises(PermissionDenied):
            await pipeline.start()

        assert pipeline.session.state is SessionState.IDLE
        assert events[-1].type == "error"
        assert "Microphone access denied" in events[-1].data["message"]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_start(self):
        """Test subscriber exceptions are contained."""

        def bad_emit(event):
            raise ValueError("subscriber broke")

        pipeline = TranscriptionPipeline(
            FakeCapture(), FakeTranscriber(), TranscriptionSession(), emit=bad_emit
        )
        await pipeline.start()
        assert pipeline.session.state is SessionState.RECORDING
        await pipeline.stop()


class TestPipelineTranscription:
    """Tests for chunk flow into the session."""

    @pytest.mark.asyncio
    async def test_partial_then_final_without_duplication(self):
        """Test fragments flow into the session and the final wins."""
        transcriber = FakeTranscriber(
            [
                TranscriptFragment(text="Hello", timestamp=0.0),
                TranscriptFragment(text="Hello world", timestamp=1.2, is_final=True),
            ]
        )
        pipeline, events = make_pipeline(transcriber=transcriber)
        await pipeline.start()

        pipeline.submit(make_chunk(captured_at=0.0))
        await settle()
        pipeline.submit(make_chunk(captured_at=1.2))
        await settle()

        final = await pipeline.stop()

        assert final == "Hello world"
        transcriptions = [e for e in events if e.type == "transcription"]
        assert [e.data["partial"] for e in transcriptions] == [True, False]
        assert transcriptions[-1].data["live_transcript"] == "Hello world"
        assert events[-1].type == "stopped"
        assert events[-1].data["final_transcript"] == "Hello world"

    @pytest.mark.asyncio
    async def test_transcription_failure_emits_error(self):
        """Test a failed chunk is dropped with an error event."""
        transcriber = FakeTranscriber(
            [
                TranscriptionFailed("Speech server returned HTTP 500"),
                TranscriptFragment(text="still here", timestamp=1.0, is_final=True),
            ]
        )
        pipeline, events = make_pipeline(transcriber=transcriber)
        await pipeline.start()

        pipeline.submit(make_chunk())
        await settle()
        pipeline.submit(make_chunk())
        await settle()
        final = await pipeline.stop()

        errors = [e for e in events if e.type == "error"]
        assert errors[0].data["message"] == "Speech server returned HTTP 500"
        assert final == "still here"

    @pytest.mark.asyncio
    async def test_unexpected_error_emits_error(self):
        """Test non-transcription exceptions also become error events."""
        transcriber = FakeTranscriber([KeyError("bad")])
        pipeline, events = make_pipeline(transcriber=transcriber)
        await pipeline.start()

        pipeline.submit(make_chunk())
        await settle()
        await pipeline.stop()

        assert any(
            e.type == "error" and e.data["message"].startswith("Transcription error")
            for e in events
        )

    @pytest.mark.asyncio
    async def test_busy_transcriber_drops_older_chunk(self):
        """Test chunks arriving while busy keep only the newest per source."""
        gate = asyncio.Event()
        transcriber = FakeTranscriber(gate=gate)
        pipeline, _ = make_pipeline(transcriber=transcriber)
        await pipeline.start()

        pipeline.submit(make_chunk(captured_at=1.0))
        await settle()
        pipeline.submit(make_chunk(captured_at=2.0))
        pipeline.submit(make_chunk(captured_at=3.0))
        await settle()

        assert pipeline.dropped_chunks == 1
        gate.set()
        await settle()
        await pipeline.stop()

        assert [c.captured_at for c in transcriber.calls] == [1.0, 3.0]

    def test_microphone_slot_first(self):
        """Test the microphone chunk is taken before system audio."""
        pipeline, _ = make_pipeline()
        pipeline._enqueue(make_chunk(source="system", captured_at=1.0))
        pipeline._enqueue(make_chunk(source="microphone", captured_at=2.0))

        assert pipeline._next_chunk().source == "microphone"
        assert pipeline._next_chunk().source == "system"
        assert pipeline._next_chunk() is None

    def test_submit_without_loop_is_dropped(self):
        """Test chunks before start are discarded quietly."""
        pipeline, _ = make_pipeline()
        pipeline.submit(make_chunk())
        assert pipeline._slots == {}


class TestPipelineStop:
    """Tests for stop()."""

    @pytest.mark.asyncio
    async def test_stop_when_idle_returns_none(self):
        """Test stop without a session is a no-op."""
        pipeline, events = make_pipeline()
        assert await pipeline.stop() is None
        assert events == []

    @pytest.mark.asyncio
    async def test_second_stop_is_noop(self):
        """Test stopping twice only finalizes once."""
        pipeline, events = make_pipeline()
        await pipeline.start()
        await pipeline.stop()

        assert await pipeline.stop() is None
        assert [e.type for e in events].count("stopped") == 1

    @pytest.mark.asyncio
    async def test_grace_period_cancels_stuck_transcription(self):
        """Test an in-flight request past the grace period is abandoned."""
        transcriber = FakeTranscriber(gate=asyncio.Event())
        pipeline, events = make_pipeline(
            transcriber=transcriber,
            config=SessionConfig(stop_grace_period=0.05, hard_stop_timeout=1.0),
        )
        await pipeline.start()
        pipeline.submit(make_chunk())
        await settle()

        started = time.monotonic()
        final = await pipeline.stop()

        assert time.monotonic() - started < 1.0
        assert final == ""
        assert pipeline.session.state is SessionState.STOPPED
        assert events[-1].type == "stopped"

    @pytest.mark.asyncio
    async def test_hard_stop_timeout_aborts_capture(self):
        """Test a hung capture stop is forced after the timeout."""
        capture = FakeCapture(stop_delay=0.3)
        pipeline, events = make_pipeline(
            capture=capture,
            config=SessionConfig(stop_grace_period=0.05, hard_stop_timeout=0.05),
        )
        await pipeline.start()

        await pipeline.stop()

        assert capture.aborted is True
        assert any(e.type == "status" and "force-stopped" in e.data["message"] for e in events)
        assert pipeline.session.state is SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_chunks_after_stop_ignored(self):
        """Test chunks arriving during drain are not queued."""
        transcriber = FakeTranscriber()
        pipeline, _ = make_pipeline(transcriber=transcriber)
        await pipeline.start()
        await pipeline.stop()

        pipeline.submit(make_chunk())
        await settle()
        assert transcriber.calls == []


class TestPipelineStatus:
    """Tests for status()."""

    @pytest.mark.asyncio
    async def test_status_includes_capture_and_drops(self):
        """Test status merges session, capture and transcriber details."""
        pipeline, _ = make_pipeline()
        await pipeline.start()

        status = pipeline.status()
        assert status["state"] == "recording"
        assert status["sources"] == ["microphone"]
        assert status["transcribing"] is False
        assert status["dropped_chunks"] == 0
        await pipeline.stop()
