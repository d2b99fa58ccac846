"""Multi-source audio capture, chunking and recovery."""

import logging
import threading
import time
from collections import deque
from math import gcd
from typing import Callable, Sequence

import numpy as np
from scipy.signal import resample_poly

from voice_agent._types import AudioChunk
from voice_agent.audio_source import AudioSource, PermissionDenied
from voice_agent.call_detector import CallDetector
from voice_agent.config import CaptureConfig

logger = logging.getLogger(__name__)

MICROPHONE = "microphone"
SYSTEM = "system"

ChunkCallback = Callable[[AudioChunk], None]


class AudioCaptureError(RuntimeError):
    """Capture could not be started on any source."""

    pass


def to_canonical(samples: np.ndarray, sample_rate: int, target_rate: int = 16000) -> np.ndarray:
    """Downmix to mono and resample to the target rate.

    Args:
        samples: Frames as (n,) or (n, channels) array
        sample_rate: Rate of the incoming frames
        target_rate: Canonical rate

    Returns:
        Mono float32 array at target_rate
    """
    audio = np.asarray(samples, dtype=np.float32)
    if audio.ndim > 1:
        audio = audio.mean(axis=1)

    if sample_rate != target_rate and len(audio) > 0:
        divisor = gcd(int(sample_rate), int(target_rate))
        audio = resample_poly(audio, target_rate // divisor, sample_rate // divisor)

    return audio.astype(np.float32, copy=False)


def mean_level(samples: np.ndarray) -> float:
    """Mean absolute amplitude; 0.0 for empty input."""
    if len(samples) == 0:
        return 0.0
    return float(np.mean(np.abs(samples)))


class AdaptiveGain:
    """Microphone gain boost applied after call apps reset the input level.

    While an interference window is open, a quiet microphone gets boosted
    step by step up to max_multiplier and decays back to 1.0 once levels
    recover. Outside the window the multiplier is always 1.0.
    """

    def __init__(
        self,
        max_multiplier: float = 6.0,
        window: float = 60.0,
        low_level: float = 0.025,
        high_level: float = 0.04,
        history: int = 30,
    ):
        self.max_multiplier = max_multiplier
        self.window = window
        self.low_level = low_level
        self.high_level = high_level
        self.multiplier = 1.0
        self._levels: deque[float] = deque(maxlen=history)
        self._interference_at: float | None = None

    def note_call_interference(self, now: float) -> None:
        reopened = not self.window_open(now)
        self._interference_at = now
        if reopened:
            logger.info("Call interference noted, adaptive microphone gain enabled for %.0fs", self.window)

    def window_open(self, now: float) -> bool:
        return self._interference_at is not None and now - self._interference_at < self.window

    def observe(self, level: float) -> None:
        self._levels.append(level)

    def current(self, now: float) -> float:
        """Return the multiplier to use for the next microphone block."""
        if not self.window_open(now):
            self.multiplier = 1.0
            return self.multiplier

        if len(self._levels) >= 10:
            recent = list(self._levels)[-10:]
            avg_level = sum(recent) / len(recent)
            if avg_level < self.low_level:
                self.multiplier = min(self.multiplier * 1.3, self.max_multiplier)
                logger.debug("Boosting mic gain to %.1fx (avg level %.4f)", self.multiplier, avg_level)
            elif avg_level > self.high_level:
                self.multiplier = max(self.multiplier * 0.95, 1.0)
                logger.debug("Reducing mic gain to %.1fx (avg level %.4f)", self.multiplier, avg_level)

        return self.multiplier


class AudioCapture:
    """Turns raw buffers from one or more sources into fixed-length chunks.

    Buffers arrive on the audio backend's threads; chunk selection runs
    under a lock and finished chunks are handed to on_chunk outside it. A
    heartbeat thread watches per-source activity and rebuilds the sources
    when every one of them has gone quiet.
    """

    def __init__(
        self,
        sources: Sequence[AudioSource],
        on_chunk: ChunkCallback,
        config: CaptureConfig | None = None,
        sample_rate: int = 16000,
        clock: Callable[[], float] = time.monotonic,
        call_detector: CallDetector | None = None,
    ):
        """Initialize capture.

        Args:
            sources: Audio sources; the microphone should come first
            on_chunk: Receives every emitted chunk
            config: Chunking and recovery parameters
            sample_rate: Canonical output rate
            clock: Monotonic time source
            call_detector: Polled from the heartbeat; running call apps open
                the adaptive microphone gain window
        """
        if not sources:
            raise ValueError("At least one audio source is required")
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")

        self.sources = list(sources)
        self.on_chunk = on_chunk
        self.config = config or CaptureConfig()
        self.sample_rate = sample_rate
        self._clock = clock
        self.call_detector = call_detector
        self._call_apps: list[str] = []

        self.adaptive_gain = AdaptiveGain(max_multiplier=self.config.adaptive_gain_max)

        self._lock = threading.Lock()
        self._recovery_lock = threading.Lock()
        self._lifecycle_lock = threading.RLock()
        self._buffers: dict[str, np.ndarray] = {}
        self._last_activity: dict[str, float] = {}
        self._active: set[str] = set()
        self._last_chunk_time = 0.0
        self._last_captured_at = 0.0
        self._running = False
        self._stop_event = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None

        logger.info(
            "AudioCapture initialized: sources=%s, chunk=%.2fs, rate=%d Hz",
            ", ".join(source.name for source in self.sources),
            self.config.chunk_duration,
            sample_rate,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_sources(self) -> list[str]:
        return [source.name for source in self.sources if source.name in self._active]

    @property
    def samples_per_chunk(self) -> int:
        return int(self.sample_rate * self.config.chunk_duration)

    @property
    def min_early_samples(self) -> int:
        return int(self.sample_rate * self.config.min_early_duration)

    def start(self) -> list[str]:
        """Start capture on every source that will open.

        Returns:
            Names of the sources that started

        Raises:
            PermissionDenied: If access to a device was refused
            AudioCaptureError: If already running or no source could start
        """
        if self._running:
            raise AudioCaptureError("Audio capture already running")

        with self._lock:
            self._buffers = {source.name: np.zeros(0, dtype=np.float32) for source in self.sources}
            self._last_chunk_time = self._clock()

        self._stop_event.clear()
        started = self._start_sources(raise_on_permission=True)
        if not started:
            raise AudioCaptureError("No audio source could be started")

        self._running = True
        self._reset_activity()

        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name="audio-heartbeat", daemon=True
        )
        self._heartbeat_thread.start()

        logger.info("Audio capture started with %s", ", ".join(started))
        return started

    def stop(self) -> None:
        """Stop all sources, clear buffers, cancel the heartbeat.

        Safe to call when already stopped.
        """
        if not self._running and self._heartbeat_thread is None:
            return

        self._stop_event.set()
        with self._lifecycle_lock:
            self._running = False
            for source in self.sources:
                source.stop()
            self._active.clear()
        self._clear_buffers()

        thread, self._heartbeat_thread = self._heartbeat_thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.config.heartbeat_interval)

        logger.info("Audio capture stopped")

    def abort(self) -> None:
        """Detach from the sources without waiting on them.

        Used when a graceful stop hangs; late buffers are ignored.
        """
        logger.warning("Aborting audio capture")
        self._running = False
        self._stop_event.set()
        self._active.clear()
        self._heartbeat_thread = None
        self._clear_buffers()

    def note_call_interference(self) -> None:
        """Tell the capture that a call app may have reset the mic level."""
        self.adaptive_gain.note_call_interference(self._clock())

    def poll_call_apps(self) -> list[str]:
        """Check for running call apps and keep the gain window open while any are up."""
        if self.call_detector is None:
            return []

        apps = self.call_detector.active_call_apps()
        if apps and apps != self._call_apps:
            logger.info("Detected active call apps: %s", ", ".join(apps))
        elif not apps and self._call_apps:
            logger.info("Call apps closed")
        self._call_apps = apps

        if apps:
            self.note_call_interference()
        return apps

    def on_buffer(self, samples: np.ndarray, source_tag: str, sample_rate: int) -> None:
        """Convert, amplify and buffer one block, then emit a chunk if due."""
        if not self._running:
            return

        audio = to_canonical(samples, sample_rate, self.sample_rate)
        if len(audio) == 0:
            return

        with self._lock:
            now = self._clock()
            self._last_activity[source_tag] = now

            if source_tag == MICROPHONE:
                gain = self.config.mic_gain * self.adaptive_gain.current(now)
            else:
                gain = self.config.system_gain
            audio = audio * np.float32(gain)

            level = mean_level(audio)
            if source_tag == MICROPHONE:
                self.adaptive_gain.observe(level)

            existing = self._buffers.get(source_tag)
            if existing is None or len(existing) == 0:
                self._buffers[source_tag] = audio
            else:
                self._buffers[source_tag] = np.concatenate([existing, audio])

            chunk = self._collect_chunk(now, level)

        if chunk is not None:
            self._deliver(chunk)

    def _collect_chunk(self, now: float, current_level: float) -> AudioChunk | None:
        """Apply the emission policy. Caller holds the lock."""
        needed = self.samples_per_chunk
        lengths = [len(buf) for buf in self._buffers.values()]

        if any(length >= needed for length in lengths):
            return self._select_chunk(now, early=False)

        if (
            now - self._last_chunk_time > self.config.min_early_interval
            and any(length >= self.min_early_samples for length in lengths)
            and current_level < self.config.silence_threshold
        ):
            logger.debug("Speech pause detected, emitting early")
            return self._select_chunk(now, early=True)

        return None

    def _select_chunk(self, now: float, early: bool) -> AudioChunk | None:
        """Pick the source to slice from and cut the chunk. Caller holds the lock."""
        cfg = self.config
        needed = self.samples_per_chunk
        required = self.min_early_samples if early else needed

        mic = self._buffers.get(MICROPHONE, np.zeros(0, dtype=np.float32))
        system = self._buffers.get(SYSTEM, np.zeros(0, dtype=np.float32))
        mic_level = mean_level(mic[-cfg.level_window:])
        sys_level = mean_level(system[-cfg.level_window:])

        if len(mic) >= required and mic_level > cfg.mic_speech_threshold:
            source, reason = MICROPHONE, "microphone priority"
        elif (
            len(system) >= required
            and sys_level > cfg.system_speech_threshold
            and mic_level <= cfg.mic_speech_threshold
        ):
            source, reason = SYSTEM, "system audio"
        elif len(mic) >= required and mic_level > cfg.weak_speech_threshold:
            source, reason = MICROPHONE, "weak microphone speech"
        else:
            for name, buf in self._buffers.items():
                if len(buf) > needed * 2:
                    self._buffers[name] = buf[needed:]
            return None

        buf = self._buffers[source]
        taken, self._buffers[source] = buf[:needed], buf[needed:]

        captured_at = max(now, self._last_captured_at)
        self._last_captured_at = captured_at
        self._last_chunk_time = now

        logger.debug(
            "%s (mic=%.4f, sys=%.4f): %d samples%s",
            reason,
            mic_level,
            sys_level,
            len(taken),
            " (early)" if early else "",
        )
        return AudioChunk(
            data=np.ascontiguousarray(taken, dtype=np.float32).tobytes(),
            sample_rate=self.sample_rate,
            channels=1,
            captured_at=captured_at,
            source=source,
            early=early,
        )

    def _deliver(self, chunk: AudioChunk) -> None:
        try:
            self.on_chunk(chunk)
        except Exception as e:
            logger.error("Chunk consumer failed: %s", e, exc_info=True)

    def check_heartbeat(self, now: float | None = None) -> bool:
        """Check source liveness, recovering when every source is silent.

        Returns:
            True if a recovery was attempted
        """
        if not self._running:
            return False

        now = self._clock() if now is None else now
        silent_for = {
            source.name: now - self._last_activity.get(source.name, now)
            for source in self.sources
        }

        if all(seconds > self.config.dead_after for seconds in silent_for.values()):
            logger.error(
                "Audio death detected: %s",
                ", ".join(f"{name} silent {seconds:.0f}s" for name, seconds in silent_for.items()),
            )
            self.recover()
            return True

        for name, seconds in silent_for.items():
            if seconds > self.config.silence_warning:
                logger.warning("%s silent for %.0fs", name, seconds)
        return False

    def recover(self) -> bool:
        """Tear down and recreate every source with retries and backoff.

        Never raises. On failure capture keeps running with whatever sources
        remain (possibly none) and the next heartbeat tries again.

        Returns:
            True if at least one source came back
        """
        if not self._recovery_lock.acquire(blocking=False):
            logger.debug("Recovery already in progress")
            return False

        try:
            logger.warning("Attempting audio system recovery")
            for source in self.sources:
                source.stop()
            self._active.clear()

            for attempt in range(1, self.config.recovery_attempts + 1):
                delay = self.config.recovery_backoff * (2 ** (attempt - 1))
                if delay > 0 and self._stop_event.wait(delay):
                    logger.info("Capture stopped during recovery")
                    return False
                if not self._running:
                    return False

                logger.info("Recovery attempt %d/%d", attempt, self.config.recovery_attempts)
                started = self._start_sources(raise_on_permission=False, while_running=True)
                if not self._running:
                    logger.info("Capture stopped during recovery")
                    return False
                if started:
                    self._reset_activity()
                    logger.info("Audio recovery succeeded on attempt %d (%s)", attempt, ", ".join(started))
                    return True

            logger.error(
                "Audio recovery failed after %d attempts; continuing without audio",
                self.config.recovery_attempts,
            )
            return False
        except Exception as e:
            logger.error("Audio recovery crashed: %s", e, exc_info=True)
            return False
        finally:
            self._recovery_lock.release()

    def _start_sources(self, raise_on_permission: bool, while_running: bool = False) -> list[str]:
        """Start each source in order.

        Each start holds the lifecycle lock so stop() cannot interleave. With
        while_running, nothing is opened once a stop has landed and a source
        that came up after it is closed again.
        """
        started: list[str] = []
        for source in self.sources:
            with self._lifecycle_lock:
                if while_running and not self._running:
                    return []
                try:
                    source.start(self.on_buffer)
                except PermissionDenied:
                    if raise_on_permission:
                        for name in started:
                            self._source(name).stop()
                            self._active.discard(name)
                        raise
                    logger.error("Permission denied for %s source", source.name)
                    continue
                except Exception as e:
                    logger.warning("%s source unavailable, continuing without it: %s", source.name, e)
                    continue
                if while_running and not self._running:
                    source.stop()
                    return []
                started.append(source.name)
                self._active.add(source.name)
        return started

    def _source(self, name: str) -> AudioSource:
        return next(source for source in self.sources if source.name == name)

    def _reset_activity(self) -> None:
        now = self._clock()
        with self._lock:
            self._last_activity = {source.name: now for source in self.sources}

    def _clear_buffers(self) -> None:
        with self._lock:
            self._buffers = {source.name: np.zeros(0, dtype=np.float32) for source in self.sources}

    def _heartbeat_loop(self) -> None:
        logger.debug("Audio heartbeat monitoring started")
        while not self._stop_event.wait(self.config.heartbeat_interval):
            try:
                self.poll_call_apps()
            except Exception as e:
                logger.warning("Call app detection failed: %s", e)
            try:
                self.check_heartbeat()
            except Exception as e:
                logger.error("Heartbeat check failed: %s", e, exc_info=True)
        logger.debug("Audio heartbeat monitoring stopped")
