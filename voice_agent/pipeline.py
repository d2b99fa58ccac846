"""Bridges capture threads, the transcriber and the session."""

import asyncio
import contextlib
import logging
from collections import deque
from typing import Callable

from voice_agent._types import AudioChunk, PipelineEvent
from voice_agent.capture import MICROPHONE, AudioCapture
from voice_agent.config import SessionConfig
from voice_agent.session import TranscriptionSession
from voice_agent.transcriber import SpeechTranscriber, TranscriptionFailed

logger = logging.getLogger(__name__)

EventCallback = Callable[[PipelineEvent], None]


class TranscriptionPipeline:
    """Runs one voice session from capture start to final transcript.

    Capture delivers chunks on its own threads; they are handed to the event
    loop with call_soon_threadsafe and parked in a one-chunk slot per source.
    A newer chunk replaces an untranscribed one, so a slow backend costs
    dropped audio instead of growing latency. A single worker task drains the
    slots, microphone first.
    """

    def __init__(
        self,
        capture: AudioCapture,
        transcriber: SpeechTranscriber,
        session: TranscriptionSession,
        emit: EventCallback | None = None,
        config: SessionConfig | None = None,
    ):
        self.capture = capture
        self.transcriber = transcriber
        self.session = session
        self.config = config or SessionConfig()
        self._emit_callback = emit

        self.capture.on_chunk = self.submit

        self._loop: asyncio.AbstractEventLoop | None = None
        self._slots: dict[str, deque[AudioChunk]] = {}
        self._wakeup: asyncio.Event | None = None
        self._worker: asyncio.Task | None = None
        self._draining = False
        self.dropped_chunks = 0

    async def start(self) -> str:
        """Start a session and begin capturing.

        Returns:
            The session id

        Raises:
            SessionAlreadyActive: If a session is already running
            Exception: Whatever capture start raised, after the session is reset
        """
        session_id = self.session.begin_start()

        self._loop = asyncio.get_running_loop()
        self._slots = {}
        self._wakeup = asyncio.Event()
        self._draining = False
        self.dropped_chunks = 0

        try:
            sources = await self._loop.run_in_executor(None, self.capture.start)
        except Exception as e:
            logger.error("Failed to start audio capture: %s", e)
            self.session.abort_start()
            self._emit("error", message=f"Failed to start recording: {e}")
            raise

        self.session.mark_recording()
        self._worker = asyncio.create_task(self._run_worker())
        self._emit("started", session_id=session_id, sources=list(sources or []))
        logger.info("Voice session %s started", session_id)
        return session_id

    async def stop(self) -> str | None:
        """Stop capture, let in-flight work finish briefly, finalize.

        Calling stop when nothing is recording is a no-op.

        Returns:
            The final transcript, or None if there was nothing to stop
        """
        if not self.session.begin_stop():
            return None

        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self.capture.stop),
                timeout=self.config.hard_stop_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Audio capture did not stop within %.1fs, forcing", self.config.hard_stop_timeout
            )
            self.capture.abort()
            self._emit("status", message="Audio capture force-stopped")
        except Exception as e:
            logger.error("Error stopping audio capture: %s", e, exc_info=True)
            self.capture.abort()

        await self._finish_worker()

        final = self.session.finish_stop()
        self._emit("stopped", final_transcript=final, session_id=self.session.id)
        logger.info("Voice session %s stopped (%d chars)", self.session.id, len(final))
        return final

    def submit(self, chunk: AudioChunk) -> None:
        """Hand a chunk over from a capture thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("No event loop for chunk, dropping")
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, chunk)
        except RuntimeError:
            logger.debug("Event loop closed, dropping chunk")

    def status(self) -> dict:
        status = self.session.status()
        status.update(
            {
                "sources": self.capture.active_sources,
                "transcribing": self.transcriber.busy,
                "dropped_chunks": self.dropped_chunks,
            }
        )
        return status

    def _enqueue(self, chunk: AudioChunk) -> None:
        if self._draining:
            return

        slot = self._slots.setdefault(chunk.source, deque(maxlen=1))
        if slot:
            self.dropped_chunks += 1
            logger.debug("Transcriber busy, dropping older %s chunk", chunk.source)
        slot.append(chunk)
        if self._wakeup is not None:
            self._wakeup.set()

    def _next_chunk(self) -> AudioChunk | None:
        mic_slot = self._slots.get(MICROPHONE)
        if mic_slot:
            return mic_slot.popleft()
        for slot in self._slots.values():
            if slot:
                return slot.popleft()
        return None

    async def _run_worker(self) -> None:
        while True:
            chunk = self._next_chunk()
            if chunk is None:
                if self._draining:
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            await self._process(chunk)

    async def _process(self, chunk: AudioChunk) -> None:
        try:
            fragment = await self.transcriber.transcribe(chunk)
        except TranscriptionFailed as e:
            logger.warning("Dropping chunk after transcription failure: %s", e)
            self._emit("error", message=str(e))
            return
        except Exception as e:
            logger.error("Unexpected transcription error: %s", e, exc_info=True)
            self._emit("error", message=f"Transcription error: {e}")
            return

        if fragment is None:
            return

        if self.session.apply(fragment):
            self._emit(
                "transcription",
                text=fragment.text,
                partial=not fragment.is_final,
                live_transcript=self.session.live_transcript,
            )

    async def _finish_worker(self) -> None:
        """Drain pending chunks within the grace period, then cancel."""
        worker, self._worker = self._worker, None
        self._draining = True
        if self._wakeup is not None:
            self._wakeup.set()

        if worker is None:
            return

        _, pending = await asyncio.wait({worker}, timeout=self.config.stop_grace_period)
        if pending:
            logger.warning(
                "Transcription still running after %.1fs grace period, cancelling",
                self.config.stop_grace_period,
            )
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    def _emit(self, event_type: str, **data) -> None:
        if self._emit_callback is None:
            return
        try:
            self._emit_callback(PipelineEvent(type=event_type, data=data))
        except Exception as e:
            logger.error("Event handler failed for %s: %s", event_type, e, exc_info=True)
