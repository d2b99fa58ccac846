"""Transcription session state machine and transcript aggregation."""

import logging
import threading
import time
import uuid
from enum import Enum
from typing import Callable

from voice_agent._types import TranscriptFragment

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle state."""

    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"
    STOPPED = "stopped"


class SessionError(RuntimeError):
    """Base class for session lifecycle errors."""

    pass


class SessionAlreadyActive(SessionError):
    """A session is already starting, recording or stopping."""

    pass


class InvalidSessionTransition(SessionError):
    """Requested transition is not allowed from the current state."""

    pass


class TranscriptionSession:
    """Aggregates fragments for one recording at a time.

    Non-final fragments accumulate in a partial buffer. A final fragment is
    appended to the transcript list and replaces whatever partials were
    pending, so the same speech never appears twice.
    """

    LIVE_WINDOW = 10

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self.state = SessionState.IDLE
        self.id: str | None = None
        self.started_at: float | None = None
        self.stopped_at: float | None = None
        self.transcripts: list[TranscriptFragment] = []
        self.partials: list[str] = []

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.STARTING, SessionState.RECORDING, SessionState.STOPPING)

    @property
    def partial_buffer(self) -> str:
        return " ".join(self.partials)

    def begin_start(self) -> str:
        """Claim the session for a new recording.

        Returns:
            The new session id

        Raises:
            SessionAlreadyActive: If a session is starting, recording or stopping
        """
        with self._lock:
            if self.state not in (SessionState.IDLE, SessionState.STOPPED):
                raise SessionAlreadyActive(f"Session already active ({self.state.value})")

            self.id = uuid.uuid4().hex
            self.started_at = self._clock()
            self.stopped_at = None
            self.transcripts = []
            self.partials = []
            logger.info("State transition: %s -> STARTING (session %s)", self.state.name, self.id)
            self.state = SessionState.STARTING
            return self.id

    def mark_recording(self) -> None:
        self._transition(SessionState.STARTING, SessionState.RECORDING)

    def abort_start(self) -> None:
        """Return to IDLE after capture failed to start."""
        self._transition(SessionState.STARTING, SessionState.IDLE)
        self.id = None
        self.started_at = None

    def apply(self, fragment: TranscriptFragment) -> bool:
        """Fold a fragment into the session.

        Fragments arriving outside RECORDING/STOPPING are ignored.

        Returns:
            True if the fragment was applied
        """
        with self._lock:
            if self.state not in (SessionState.RECORDING, SessionState.STOPPING):
                logger.debug("Ignoring fragment in %s state", self.state.value)
                return False

            text = fragment.text.strip()
            if not text:
                return False

            if fragment.is_final:
                self.transcripts.append(fragment)
                self.partials = []
                logger.debug("Final fragment: %s", text)
            else:
                self.partials.append(text)
                logger.debug("Partial fragment: %s", text)
            return True

    def begin_stop(self) -> bool:
        """Move a recording session to STOPPING.

        Returns:
            False if there is nothing to stop
        """
        with self._lock:
            if self.state is not SessionState.RECORDING:
                logger.debug("Stop requested in %s state, nothing to do", self.state.value)
                return False
            logger.info("State transition: RECORDING -> STOPPING")
            self.state = SessionState.STOPPING
            return True

    def finish_stop(self) -> str:
        """Complete the stop and return the final transcript."""
        self._transition(SessionState.STOPPING, SessionState.STOPPED)
        self.stopped_at = self._clock()
        return self.final_transcript

    def reset(self) -> None:
        with self._lock:
            logger.debug("Session reset from %s", self.state.value)
            self.state = SessionState.IDLE
            self.id = None
            self.started_at = None
            self.stopped_at = None
            self.transcripts = []
            self.partials = []

    @property
    def final_transcript(self) -> str:
        """Finalized texts in order, followed by any pending partials."""
        parts = [fragment.text.strip() for fragment in self.transcripts]
        if self.partials:
            parts.append(self.partial_buffer)
        return " ".join(part for part in parts if part)

    @property
    def live_transcript(self) -> str:
        """Recent finalized texts plus pending partials, for display."""
        parts = [fragment.text.strip() for fragment in self.transcripts[-self.LIVE_WINDOW:]]
        if self.partials:
            parts.append(self.partial_buffer)
        return " ".join(part for part in parts if part)

    def status(self) -> dict:
        if self.started_at is None:
            duration = 0.0
        else:
            end = self.stopped_at if self.stopped_at is not None else self._clock()
            duration = end - self.started_at

        return {
            "session_id": self.id,
            "state": self.state.value,
            "is_active": self.is_active,
            "duration": duration,
            "transcript_count": len(self.transcripts),
            "partial_count": len(self.partials),
        }

    def _transition(self, expected: SessionState, target: SessionState) -> None:
        with self._lock:
            if self.state is not expected:
                raise InvalidSessionTransition(
                    f"Cannot move to {target.value} from {self.state.value}"
                )
            logger.info("State transition: %s -> %s", expected.name, target.name)
            self.state = target
