"""Boundary between user actions, the voice pipeline and the agent."""

import logging
from pathlib import Path
from typing import Callable

from voice_agent._types import AgentResult, PipelineEvent
from voice_agent.agent import AgentLoop
from voice_agent.audio_source import MicrophoneSource, SystemAudioSource
from voice_agent.call_detector import ProcessCallDetector
from voice_agent.capture import AudioCapture
from voice_agent.config import Config
from voice_agent.llm import OpenAIChatProvider
from voice_agent.pipeline import TranscriptionPipeline
from voice_agent.session import SessionState, TranscriptionSession
from voice_agent.summarizer import TextDirectorySummarizer
from voice_agent.tools import WorkspaceState, build_default_registry
from voice_agent.transcriber import SpeechTranscriber

logger = logging.getLogger(__name__)

Subscriber = Callable[[PipelineEvent], None]

TASK_TEMPLATE = (
    "Task: {prompt}\n"
    "Directory: {directory}\n\n"
    "If the directory is provided, you can use tools like list_files, read_text, or summarize_dir. \n"
    "Provide a final answer with specific citations and actionable insights."
)


class ValidationError(ValueError):
    """User input rejected before any work started."""

    pass


class EventBus:
    """Fans pipeline and agent events out to subscribers."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Subscriber:
        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def emit(self, event: PipelineEvent) -> None:
        logger.debug("Event %s: %s", event.type, event.data)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error("Event subscriber failed for %s: %s", event.type, e, exc_info=True)


class Orchestrator:
    """Wires voice sessions and typed prompts into the agent loop.

    In voice-command mode the final transcript of a stopped session becomes
    an agent task; otherwise stop just returns the transcript.
    """

    def __init__(
        self,
        pipeline: TranscriptionPipeline,
        agent: AgentLoop,
        config: Config | None = None,
        bus: EventBus | None = None,
    ):
        self.pipeline = pipeline
        self.agent = agent
        self.config = config or Config()
        self.bus = bus or EventBus()
        logger.info(
            "Orchestrator initialized (voice command mode: %s)",
            self.config.session.voice_command_mode,
        )

    async def start_voice(self) -> dict:
        """Begin a voice session.

        Raises:
            SessionAlreadyActive: If a session is already running
        """
        session_id = await self.pipeline.start()
        return {"success": True, "session_id": session_id}

    async def stop_voice(self, run_agent: bool | None = None) -> dict:
        """End the voice session and optionally hand the transcript to the agent.

        Args:
            run_agent: Override voice-command mode for this stop

        Returns:
            Dict with success, final_transcript, transcripts and, when the
            agent ran, agent (final, steps, success)
        """
        final = await self.pipeline.stop()
        session = self.pipeline.session
        transcripts = [fragment.text for fragment in session.transcripts]

        if final is None:
            logger.debug("Stop requested with no active recording")
            return {
                "success": True,
                "final_transcript": session.final_transcript,
                "transcripts": transcripts,
                "already_stopped": True,
            }

        result = {"success": True, "final_transcript": final, "transcripts": transcripts}

        if run_agent is None:
            run_agent = self.config.session.voice_command_mode
        if run_agent and len(final.strip()) >= self.config.session.min_command_length:
            self._emit("status", message="Processing voice command...")
            agent_result = await self.run_prompt(final)
            result["agent"] = _agent_summary(agent_result)
        elif run_agent:
            logger.info("Transcript too short for a voice command (%d chars)", len(final.strip()))

        return result

    async def run_prompt(
        self,
        prompt: str,
        dir_path: str | None = None,
        max_steps: int | None = None,
    ) -> AgentResult:
        """Run the agent on a typed or spoken task.

        Raises:
            ValidationError: On an empty prompt or a directory that does not exist
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Please enter a prompt.")

        directory = None
        if dir_path:
            directory = Path(dir_path).expanduser()
            if not directory.is_dir():
                raise ValidationError(f"Directory does not exist: {dir_path}")

        message = TASK_TEMPLATE.format(
            prompt=prompt.strip(),
            directory=str(directory) if directory else "Not specified",
        )
        logger.info("Running agent task (%d chars, dir=%s)", len(prompt), directory or "none")

        result = await self.agent.run(
            [{"role": "user", "content": message}],
            max_steps=max_steps,
        )
        self._emit("agent_response", **_agent_summary(result))
        return result

    def voice_status(self) -> dict:
        return self.pipeline.status()

    async def shutdown(self) -> None:
        """Stop any session and release HTTP clients."""
        logger.info("Orchestrator shutdown starting")
        if self.pipeline.session.state is SessionState.RECORDING:
            try:
                await self.pipeline.stop()
            except Exception as e:
                logger.warning("Error stopping voice session: %s", e)

        for name, resource in (
            ("transcriber", self.pipeline.transcriber),
            ("chat provider", self.agent.provider),
        ):
            aclose = getattr(resource, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
                logger.debug("%s closed", name)
            except Exception as e:
                logger.warning("Error closing %s: %s", name, e)

        logger.info("Orchestrator shutdown complete")

    def _emit(self, event_type: str, **data) -> None:
        self.bus.emit(PipelineEvent(type=event_type, data=data))


def _agent_summary(result: AgentResult) -> dict:
    return {
        "final": result.final,
        "steps": result.steps,
        "success": result.ok,
        "status": result.status.value,
    }


def build_orchestrator(config: Config) -> Orchestrator:
    """Construct the full object graph from configuration."""
    bus = EventBus()

    sources = [
        MicrophoneSource(
            config.audio.microphone_device,
            block_duration=config.audio.block_duration,
            latency=config.audio.latency,
        )
    ]
    if config.audio.enable_system_audio:
        sources.append(
            SystemAudioSource(
                config.audio.system_device,
                block_duration=config.audio.block_duration,
                latency=config.audio.latency,
            )
        )

    call_detector = ProcessCallDetector(config.capture.call_apps) if config.capture.call_detection else None
    capture = AudioCapture(
        sources,
        on_chunk=lambda chunk: None,
        config=config.capture,
        sample_rate=config.audio.sample_rate,
        call_detector=call_detector,
    )
    transcriber = SpeechTranscriber(
        endpoint=config.speech.endpoint,
        timeout=config.speech.timeout,
        temperature=config.speech.temperature,
        response_format=config.speech.response_format,
    )
    pipeline = TranscriptionPipeline(
        capture,
        transcriber,
        TranscriptionSession(),
        emit=bus.emit,
        config=config.session,
    )

    provider = OpenAIChatProvider(
        model=config.agent.model,
        api_key=config.agent.api_key,
        base_url=config.agent.base_url,
        temperature=config.agent.temperature,
        timeout=config.agent.timeout,
    )
    summarizer = TextDirectorySummarizer(
        provider,
        max_files=config.tools.summarizer_max_files,
        max_chars=config.tools.summarizer_max_chars,
    )
    registry = build_default_registry(WorkspaceState(), summarizer, config.tools)
    agent = AgentLoop(
        provider,
        registry,
        max_steps=config.agent.max_steps,
        observation_limit=config.agent.observation_limit,
    )

    return Orchestrator(pipeline, agent, config=config, bus=bus)
