"""Speech-to-text bridge to a local HTTP recognition server."""

import asyncio
import io
import logging
import re
import time
import wave

import httpx
import numpy as np

from voice_agent._types import AudioChunk, TranscriptFragment

logger = logging.getLogger(__name__)

# Transcripts that recognition servers produce for background noise.
NON_SPEECH_PATTERNS = frozenset(
    {
        "hmm", "uhh", "ahh", "ohh", "ehh",
        "click", "tap", "type", "typing", "keyboard", "keyboard clicking",
        "mouse", "scroll", "scrolling",
        "music", "song", "beat", "melody", "instrumental",
        "beep", "ping", "notification", "alert",
        "breath", "sigh", "cough", "sniff",
        "uh", "um", "er", "ah", "oh", "mm",
        "static", "noise", "ambient", "background",
        "fan", "air", "conditioning", "ventilation", "wind", "breeze",
        "whir", "hum", "buzz", "whirr", "whoosh", "rushing",
        "refrigerator", "fridge", "heater", "radiator", "appliance",
        "motor", "engine", "running", "humming", "buzzing",
        "water", "drip", "dripping", "flowing", "gurgle",
        "electrical", "interference", "hiss", "crackle",
        "a", "e", "i", "o", "u",
        "1", "2", "3", "4", "5",
    }
)

_TEXT_KEYS = ("text", "transcript", "result", "partial")
_CONFIDENCE_KEYS = ("confidence", "prob", "avg_logprob")


class TranscriptionFailed(RuntimeError):
    """The recognition backend could not produce a transcript."""

    pass


def is_non_speech(text: str) -> bool:
    """Return True if a transcript looks like noise rather than speech."""
    cleaned = text.strip().lower()

    if len(cleaned) < 3:
        return True

    most_common = max(cleaned.count(ch) for ch in set(cleaned))
    if most_common / len(cleaned) > 0.7:
        return True

    for pattern in NON_SPEECH_PATTERNS:
        if cleaned == pattern or (pattern in cleaned and len(cleaned) <= len(pattern) + 2):
            return True

    alphanumeric = sum(1 for ch in cleaned if ch.isalnum())
    return alphanumeric < len(cleaned) * 0.5


def sanitize_text(text: str) -> str:
    """Strip blank-audio markers, collapse whitespace and unwrap quotes."""
    text = text.replace("[BLANK_AUDIO]", " ")
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        text = text[1:-1].strip()
    return text


def parse_response(payload: object, timestamp: float) -> TranscriptFragment | None:
    """Normalize a recognition server response into a fragment.

    Accepts the common shapes: ``{"text": ...}`` from whisper.cpp style
    servers, or objects carrying transcript/result/partial keys with optional
    confidence and finality markers. A bare string is taken as the text.

    Returns:
        Fragment, or None if the response carries no usable text
    """
    if isinstance(payload, str):
        payload = {"text": payload}
    if not isinstance(payload, dict):
        raise TranscriptionFailed(f"Unexpected response payload: {type(payload).__name__}")

    raw_text = next(
        (payload[key] for key in _TEXT_KEYS if isinstance(payload.get(key), str)),
        "",
    )
    text = sanitize_text(raw_text)
    if not text:
        return None

    confidence = next(
        (float(payload[key]) for key in _CONFIDENCE_KEYS if isinstance(payload.get(key), (int, float))),
        None,
    )

    kind = str(payload.get("type", "")).lower()
    is_final = "final" in kind or payload.get("is_final") is True or payload.get("final") is True

    return TranscriptFragment(
        text=text,
        timestamp=timestamp,
        confidence=confidence,
        is_final=is_final,
    )


def chunk_to_wav(chunk: AudioChunk) -> bytes:
    """Serialize a float32 chunk to 16-bit PCM WAV bytes."""
    samples = np.clip(chunk.samples(), -1.0, 1.0)
    pcm = (samples * 32767.0).astype("<i2")

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(chunk.channels)
        wav_file.setsampwidth(2)
        wav_file.setframerate(chunk.sample_rate)
        wav_file.writeframes(pcm.tobytes())
    return buffer.getvalue()


class SpeechTranscriber:
    """Sends audio chunks to a local speech server, one at a time.

    The HTTP client is created lazily on first use unless one is injected.
    Calls are serialized by an asyncio.Lock so the backend never sees more
    than one request from this transcriber.
    """

    def __init__(
        self,
        endpoint: str = "http://127.0.0.1:8081/inference",
        timeout: float = 30.0,
        temperature: float = 0.0,
        response_format: str = "json",
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize transcriber.

        Args:
            endpoint: Inference URL of the recognition server
            timeout: Per-request timeout in seconds
            temperature: Decoding temperature sent with each request
            response_format: Response format requested from the server
            client: Optional pre-built httpx.AsyncClient
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.temperature = temperature
        self.response_format = response_format
        self._client = client
        self._client_owned = client is None
        self._slot = asyncio.Lock()
        logger.info("SpeechTranscriber initialized: endpoint=%s, timeout=%.1fs", endpoint, timeout)

    @property
    def busy(self) -> bool:
        """True while a request is in flight."""
        return self._slot.locked()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def transcribe(self, chunk: AudioChunk) -> TranscriptFragment | None:
        """Transcribe one chunk.

        Returns:
            Fragment, or None when the result is empty or filtered as noise

        Raises:
            TranscriptionFailed: On transport error, non-200 status or a bad body
        """
        wav_bytes = chunk_to_wav(chunk)

        async with self._slot:
            start_time = time.perf_counter()
            try:
                response = await self._get_client().post(
                    self.endpoint,
                    files={"file": ("audio.wav", wav_bytes, "audio/wav")},
                    data={
                        "temperature": str(self.temperature),
                        "response_format": self.response_format,
                    },
                )
            except httpx.HTTPError as e:
                logger.error("Speech request failed: %s", e)
                raise TranscriptionFailed(f"Speech request failed: {e}") from e

            if response.status_code != 200:
                logger.error("Speech server returned HTTP %d", response.status_code)
                raise TranscriptionFailed(f"Speech server returned HTTP {response.status_code}")

            try:
                payload = response.json()
            except ValueError as e:
                raise TranscriptionFailed(f"Unparseable speech response: {e}") from e

            fragment = parse_response(payload, timestamp=chunk.captured_at)
            logger.debug(
                "Transcribed %.2fs %s chunk in %.2fs",
                chunk.duration,
                chunk.source,
                time.perf_counter() - start_time,
            )

        if fragment is None:
            return None

        if is_non_speech(fragment.text):
            logger.debug("Filtered non-speech transcript: %r", fragment.text)
            return None

        return fragment

    async def aclose(self) -> None:
        """Close the HTTP client if this transcriber created it."""
        logger.info("SpeechTranscriber shutting down")
        if self._client is not None and self._client_owned:
            await self._client.aclose()
        self._client = None
