"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np


@dataclass(frozen=True)
class AudioChunk:
    """Container for one slice of canonical (mono, float32) audio."""

    data: bytes
    sample_rate: int
    channels: int
    captured_at: float
    source: str = "microphone"
    early: bool = False

    @property
    def num_samples(self) -> int:
        return len(self.data) // 4 // max(self.channels, 1)

    @property
    def duration(self) -> float:
        """Chunk length in seconds."""
        return self.num_samples / self.sample_rate

    def samples(self) -> np.ndarray:
        return np.frombuffer(self.data, dtype=np.float32)


@dataclass(frozen=True)
class TranscriptFragment:
    """One unit of transcribed text, partial or final."""

    text: str
    timestamp: float
    confidence: float | None = None
    is_final: bool = False


@dataclass(frozen=True)
class ToolCall:
    """A model request to invoke a named tool."""

    tool: str
    args: dict[str, Any] = field(default_factory=dict)


class AgentStatus(Enum):
    """Agent run status."""

    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    STEP_LIMIT_REACHED = "step_limit_reached"


@dataclass
class AgentResult:
    """Outcome of one agent run."""

    status: AgentStatus
    final: str
    steps: int

    @property
    def ok(self) -> bool:
        return self.status is AgentStatus.FINISHED


@dataclass
class PipelineEvent:
    """Tagged event relayed from the pipeline to the boundary."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
