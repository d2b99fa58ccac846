"""Audio sources: platform capture behind a small capability interface."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import numpy as np
import sounddevice

logger = logging.getLogger(__name__)

BufferCallback = Callable[[np.ndarray, str, int], None]
"""Receives (samples, source tag, sample rate) for every captured block."""

LOOPBACK_MARKERS = ("monitor", "loopback", "stereo mix", "what u hear", "wave out mix", "blackhole")

_PERMISSION_MARKERS = ("permission", "not permitted", "access denied", "denied")


class AudioSourceError(RuntimeError):
    """Audio source could not be opened or failed while running."""

    pass


class PermissionDenied(AudioSourceError):
    """The user or the OS refused access to an audio device."""

    pass


@dataclass
class SourceHealth:
    """Snapshot of a source's liveness."""

    name: str
    running: bool
    last_activity: float | None
    error: str | None = None


class AudioSource(Protocol):
    """Capability every capture backend provides."""

    name: str

    def start(self, on_buffer: BufferCallback) -> None: ...

    def stop(self) -> None: ...

    def health(self) -> SourceHealth: ...


def _source_error(message: str, exc: Exception) -> AudioSourceError:
    text = str(exc).lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return PermissionDenied(f"{message}: {exc}")
    return AudioSourceError(f"{message}: {exc}")


def _query_input_devices() -> list[tuple[int, dict]]:
    device_list = sounddevice.query_devices()
    if isinstance(device_list, dict):
        device_list = [device_list]
    return [
        (idx, dev_info)
        for idx, dev_info in enumerate(device_list)
        if dev_info.get("max_input_channels", 0) > 0
    ]


class SoundDeviceSource:
    """Streams float32 blocks from a sounddevice input device.

    Opens the device at its native rate; conversion to the canonical format
    happens in the capture layer so every source can be treated alike.
    """

    def __init__(
        self,
        name: str,
        device: int | str | None = None,
        sample_rate: int | None = None,
        block_duration: float = 0.1,
        latency: float | str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize source.

        Args:
            name: Source tag attached to every buffer
            device: Device index or (partial) name; None for the default input
            sample_rate: Stream rate; None uses the device default
            block_duration: Seconds of audio per callback block
            latency: Optional sounddevice latency hint
            clock: Monotonic time source for activity tracking
        """
        if block_duration <= 0:
            raise ValueError("block_duration must be positive")

        self.name = name
        self.device = device
        self.sample_rate = sample_rate
        self.block_duration = block_duration
        self.latency = latency
        self._clock = clock

        self._stream = None
        self._on_buffer: BufferCallback | None = None
        self._stream_rate = sample_rate or 0
        self._last_activity: float | None = None
        self._last_error: str | None = None
        self._lock = threading.Lock()

    def start(self, on_buffer: BufferCallback) -> None:
        """Open the input stream and start delivering blocks.

        Raises:
            PermissionDenied: If access to the device is refused
            AudioSourceError: If the stream cannot be opened
        """
        with self._lock:
            if self._stream is not None:
                raise AudioSourceError(f"{self.name} source already started")

            device = self._resolve_device()
            rate, channels = self._stream_format(device)

            try:
                stream = sounddevice.InputStream(
                    device=device,
                    samplerate=rate,
                    channels=channels,
                    blocksize=max(1, int(rate * self.block_duration)),
                    latency=self.latency,
                    callback=self._callback,
                    dtype="float32",
                )
                stream.start()
            except Exception as e:
                self._last_error = str(e)
                logger.error("Failed to start %s stream: %s", self.name, e)
                raise _source_error(f"Failed to start {self.name} stream", e) from e

            self._stream = stream
            self._stream_rate = rate
            self._on_buffer = on_buffer
            self._last_activity = self._clock()
            self._last_error = None

        logger.info(
            "%s stream started (sample_rate=%d, channels=%d, device=%s)",
            self.name,
            rate,
            channels,
            device if device is not None else "default",
        )

    def stop(self) -> None:
        """Close the stream; safe to call when not started."""
        with self._lock:
            stream, self._stream = self._stream, None
            self._on_buffer = None

        if stream is None:
            return

        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Error closing %s stream: %s", self.name, e)
        logger.info("%s stream stopped", self.name)

    def health(self) -> SourceHealth:
        stream = self._stream
        running = bool(stream is not None and getattr(stream, "active", True))
        return SourceHealth(
            name=self.name,
            running=running,
            last_activity=self._last_activity,
            error=self._last_error,
        )

    def _callback(self, indata, frames, time_info, status):
        """Stream callback invoked on audio data arrival."""
        if status:
            logger.warning("%s stream status: %s", self.name, status)

        self._last_activity = self._clock()
        on_buffer = self._on_buffer
        if on_buffer is None:
            return

        try:
            on_buffer(indata.copy(), self.name, self._stream_rate)
        except Exception as e:
            # Never let a consumer error kill the audio thread.
            logger.error("Buffer handler failed for %s: %s", self.name, e, exc_info=True)

    def _stream_format(self, device: int | None) -> tuple[int, int]:
        """Pick the stream rate and channel count for the device."""
        rate = self.sample_rate
        channels = 1
        try:
            info = sounddevice.query_devices(device, "input")
            if rate is None:
                rate = int(info.get("default_samplerate") or 0) or None
            channels = max(1, min(int(info.get("max_input_channels", 1)), 2))
        except Exception as e:
            logger.debug("Could not query %s device info: %s", self.name, e)

        return rate or 16000, channels

    def _resolve_device(self) -> int | None:
        """Resolve configured device selection to a sounddevice index."""
        if self.device is None or isinstance(self.device, int):
            return self.device

        try:
            devices = _query_input_devices()
        except Exception as e:
            logger.warning(
                "Unable to enumerate audio devices for '%s': %s; using default",
                self.device,
                e,
            )
            return None

        target = self.device.strip().lower()
        partial_matches: list[tuple[int, str]] = []
        available: list[str] = []

        for idx, dev_info in devices:
            name = dev_info.get("name", f"Device {idx}")
            normalized = name.strip().lower()
            available.append(f"[{idx}] {name}")

            if normalized == target:
                logger.debug("Resolved %s device '%s' to index %d (exact match)", self.name, self.device, idx)
                return idx

            if target in normalized:
                partial_matches.append((idx, name))

        if partial_matches:
            idx, name = partial_matches[0]
            logger.debug(
                "Resolved %s device '%s' to index %d via partial match (%s)",
                self.name,
                self.device,
                idx,
                name,
            )
            return idx

        logger.warning(
            "Audio device '%s' not found. Using default input. Available devices: %s",
            self.device,
            "; ".join(available) if available else "none",
        )
        return None


class MicrophoneSource(SoundDeviceSource):
    """The user's microphone."""

    def __init__(self, device: int | str | None = None, **kwargs):
        super().__init__("microphone", device=device, **kwargs)


class SystemAudioSource(SoundDeviceSource):
    """System playback captured through a loopback or monitor input.

    Unlike the microphone there is no sensible default: if no loopback
    device exists the source refuses to start.
    """

    def __init__(self, device: str | None = None, **kwargs):
        super().__init__("system", device=device, **kwargs)

    def _resolve_device(self) -> int | None:
        if isinstance(self.device, int):
            return self.device

        try:
            devices = _query_input_devices()
        except Exception as e:
            raise _source_error("Unable to enumerate loopback devices", e) from e

        markers = (self.device.strip().lower(),) if self.device else LOOPBACK_MARKERS
        for idx, dev_info in devices:
            name = str(dev_info.get("name", "")).lower()
            if any(marker in name for marker in markers):
                logger.info("Using loopback device [%d] %s", idx, dev_info.get("name"))
                return idx

        raise AudioSourceError(
            "No system audio loopback device found "
            f"(looked for: {', '.join(markers)})"
        )

