"""Typer CLI entrypoint for voice-agent."""

import asyncio
import json
import logging
from pathlib import Path

import typer

from voice_agent._types import PipelineEvent
from voice_agent.audio_source import LOOPBACK_MARKERS
from voice_agent.config import Config, ConfigError, discover_audio_devices, load_config
from voice_agent.orchestrator import ValidationError, build_orchestrator
from voice_agent.session import SessionError

app = typer.Typer(help="Voice-driven local agent with file tools")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _apply_general_config(cfg: Config) -> None:
    """Switch to DEBUG when the config file asks for verbose or debug output."""
    if cfg.general.verbose or cfg.general.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled from [general] config")


def _merge_config_overrides(
    cfg: Config,
    *,
    endpoint: str | None = None,
    model: str | None = None,
    microphone: str | None = None,
    no_system_audio: bool = False,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.
    """
    if endpoint is not None:
        logger.debug("Overriding speech endpoint to '%s'", endpoint)
        cfg.speech.endpoint = endpoint

    if model is not None:
        logger.debug("Overriding agent model to '%s'", model)
        cfg.agent.model = model

    if microphone is not None:
        logger.debug("Overriding microphone device to '%s'", microphone)
        cfg.audio.microphone_device = int(microphone) if microphone.isdigit() else microphone

    if no_system_audio:
        logger.debug("Disabling system audio capture")
        cfg.audio.enable_system_audio = False

    return cfg


def _print_event(event: PipelineEvent) -> None:
    if event.type == "transcription":
        marker = "..." if event.data.get("partial") else ">"
        typer.echo(f"{marker} {event.data.get('text', '')}")
    elif event.type in ("status", "error"):
        typer.echo(f"[{event.type}] {event.data.get('message', '')}", err=event.type == "error")


async def _listen(cfg: Config, run_agent: bool | None) -> int:
    orchestrator = build_orchestrator(cfg)
    orchestrator.bus.subscribe(_print_event)
    try:
        await orchestrator.start_voice()
        typer.echo("Listening... press Enter to stop.")
        await asyncio.to_thread(input)

        result = await orchestrator.stop_voice(run_agent=run_agent)
        typer.echo("")
        typer.echo(f"Transcript: {result['final_transcript'] or '(nothing recognized)'}")

        agent = result.get("agent")
        if agent is not None:
            typer.echo(agent["final"])
            return 0 if agent["success"] else 1
        return 0
    finally:
        await orchestrator.shutdown()


async def _ask(cfg: Config, prompt: str, directory: Path | None, max_steps: int | None) -> int:
    orchestrator = build_orchestrator(cfg)
    try:
        result = await orchestrator.run_prompt(
            prompt,
            dir_path=str(directory) if directory else None,
            max_steps=max_steps,
        )
        typer.echo(result.final)
        logger.info("Agent finished with status %s after %d steps", result.status.value, result.steps)
        return 0 if result.ok else 1
    finally:
        await orchestrator.shutdown()


@app.command()
def listen(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    no_agent: bool = typer.Option(
        False, "--no-agent", help="Only transcribe, do not run the agent"
    ),
    endpoint: str | None = typer.Option(
        None, "--endpoint", help="Override speech server inference URL"
    ),
    microphone: str | None = typer.Option(
        None, "--mic", help="Override microphone device (index or name)"
    ),
    no_system_audio: bool = typer.Option(
        False, "--no-system-audio", help="Capture the microphone only"
    ),
) -> None:
    """Record a voice session, print the transcript and run it as a task."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        _apply_general_config(cfg)
        cfg = _merge_config_overrides(
            cfg,
            endpoint=endpoint,
            microphone=microphone,
            no_system_audio=no_system_audio,
        )
        cfg.validate()
        logger.info("Configuration validated successfully")

        exit_code = asyncio.run(_listen(cfg, run_agent=False if no_agent else None))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except SessionError as e:
        logger.error("Session error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)

    raise typer.Exit(exit_code)


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Task for the agent"),
    directory: Path | None = typer.Option(
        None, "--dir", "-d", help="Directory the task is about"
    ),
    max_steps: int | None = typer.Option(
        None, "--max-steps", help="Override the agent step budget"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Override the chat model"
    ),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
) -> None:
    """Run the agent on a typed prompt."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        _apply_general_config(cfg)
        cfg = _merge_config_overrides(cfg, model=model)
        cfg.validate()

        exit_code = asyncio.run(_ask(cfg, prompt, directory, max_steps))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except ValidationError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)

    raise typer.Exit(exit_code)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio capture devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        for dev in devices:
            name = str(dev["name"]).lower()
            dev["loopback"] = any(marker in name for marker in LOOPBACK_MARKERS)

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                suffix = " [system audio]" if dev["loopback"] else ""
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz){suffix}"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
