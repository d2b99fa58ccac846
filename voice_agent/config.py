"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "AudioConfig",
    "CaptureConfig",
    "SpeechConfig",
    "SessionConfig",
    "AgentConfig",
    "ToolsConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_audio_devices",
]

_SECTIONS = ("audio", "capture", "speech", "session", "agent", "tools", "general")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class AudioConfig:
    """Audio source configuration."""

    sample_rate: int = 16000
    microphone_device: int | str | None = None
    system_device: str | None = None
    enable_system_audio: bool = True
    block_duration: float = 0.1
    latency: float | str | None = None


@dataclass
class CaptureConfig:
    """Chunking, source selection and recovery heuristics.

    The energy thresholds were tuned by ear on a handful of machines; treat
    them as starting points rather than constants.
    """

    chunk_duration: float = 1.2
    min_early_duration: float = 0.5
    min_early_interval: float = 0.6
    silence_threshold: float = 0.001
    mic_speech_threshold: float = 0.001
    system_speech_threshold: float = 0.005
    weak_speech_threshold: float = 0.0005
    level_window: int = 8000
    mic_gain: float = 3.2
    system_gain: float = 1.6
    adaptive_gain_max: float = 6.0
    heartbeat_interval: float = 5.0
    silence_warning: float = 5.0
    dead_after: float = 10.0
    recovery_attempts: int = 3
    recovery_backoff: float = 2.0
    call_detection: bool = True
    call_apps: list[str] = field(
        default_factory=lambda: ["zoom", "teams", "skype", "facetime", "whatsapp", "discord", "webex", "meet"]
    )


@dataclass
class SpeechConfig:
    """Local speech recognition backend."""

    endpoint: str = "http://127.0.0.1:8081/inference"
    timeout: float = 30.0
    temperature: float = 0.0
    response_format: str = "json"


@dataclass
class SessionConfig:
    """Recording session lifecycle settings."""

    stop_grace_period: float = 1.0
    hard_stop_timeout: float = 10.0
    voice_command_mode: bool = True
    min_command_length: int = 3


@dataclass
class AgentConfig:
    """Language model and agent loop settings."""

    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = 0.2
    timeout: float = 60.0
    max_steps: int = 6
    observation_limit: int = 4000


@dataclass
class ToolsConfig:
    """Limits for the agent's file tools."""

    max_files: int = 300
    max_bytes: int = 20000
    summary_limit: int = 8000
    summarizer_max_files: int = 40
    summarizer_max_chars: int = 120_000


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False
    debug: bool = False


@dataclass
class Config:
    """Main configuration container."""

    audio: AudioConfig = field(default_factory=AudioConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. VOICE_AGENT_CONFIG env var
                  2. ./voice_agent.toml
                  3. ~/.config/voice_agent.toml
                  and falls back to built-in defaults when none exists.
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If an explicit config file is missing or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path) if resolved_path else {}

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                audio=AudioConfig(**coerced["audio"]),
                capture=CaptureConfig(**coerced["capture"]),
                speech=SpeechConfig(**coerced["speech"]),
                session=SessionConfig(**coerced["session"]),
                agent=AgentConfig(**coerced["agent"]),
                tools=ToolsConfig(**coerced["tools"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: If any value is out of range
        """
        try:
            validate_audio_config(self.audio)
            validate_capture_config(self.capture)
            validate_speech_config(self.speech)
            validate_session_config(self.session)
            validate_agent_config(self.agent)
            validate_tools_config(self.tools)
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Validation failed: {e}") from e


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path | None:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. VOICE_AGENT_CONFIG environment variable
    3. ./voice_agent.toml (current directory)
    4. ~/.config/voice_agent.toml (user config directory)

    Returns:
        Resolved path, or None when no candidate exists

    Raises:
        ConfigError: If the CLI-provided path does not exist
    """
    candidates = []

    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("VOICE_AGENT_CONFIG"):
        candidates.append(Path(env_path))

    candidates.append(Path("voice_agent.toml"))
    candidates.append(Path.home() / ".config" / "voice_agent.toml")

    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    logger.info(
        "No config file found (searched: %s), using defaults",
        ", ".join(str(c) for c in candidates),
    )
    return None


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Every section defaults to an empty table. Agent credentials and endpoint
    fall back to the OPENAI_* environment variables when unset.

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for overrides

    Returns:
        Coerced dictionary ready for dataclass instantiation
    """
    unknown = set(raw_data) - set(_SECTIONS)
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", ", ".join(sorted(unknown)))

    coerced = {}
    for section in _SECTIONS:
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    agent_section = coerced["agent"]
    if not agent_section.get("api_key"):
        agent_section["api_key"] = env.get("OPENAI_API_KEY")
    if not agent_section.get("base_url") and env.get("OPENAI_BASE_URL"):
        agent_section["base_url"] = env["OPENAI_BASE_URL"]
    if "model" not in agent_section and env.get("OPENAI_MODEL"):
        agent_section["model"] = env["OPENAI_MODEL"]

    return coerced


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio capture devices.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate
        Returns empty list if sounddevice unavailable or no devices found
    """
    try:
        import sounddevice
    except (ImportError, OSError):
        logger.warning("sounddevice not available, cannot enumerate audio devices")
        return []

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": dev_info.get("name", f"Device {idx}"),
                        "channels": dev_info.get("max_input_channels", 0),
                        "sample_rate": dev_info.get("default_samplerate", 0),
                    }
                )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_audio_config(audio_cfg: AudioConfig) -> None:
    """Validate audio source configuration.

    Raises:
        ConfigError: If audio configuration is invalid
    """
    if audio_cfg.sample_rate <= 0:
        raise ConfigError(f"sample_rate must be positive, got {audio_cfg.sample_rate}")

    if not 0 < audio_cfg.block_duration <= 1.0:
        raise ConfigError(
            f"block_duration must be in (0, 1] seconds, got {audio_cfg.block_duration}"
        )


def validate_capture_config(capture_cfg: CaptureConfig) -> None:
    """Validate chunking and recovery parameters.

    Raises:
        ConfigError: If capture configuration is invalid
    """
    if capture_cfg.chunk_duration <= 0:
        raise ConfigError(
            f"chunk_duration must be positive, got {capture_cfg.chunk_duration}"
        )

    if not 0 < capture_cfg.min_early_duration <= capture_cfg.chunk_duration:
        raise ConfigError(
            "min_early_duration must be positive and no longer than chunk_duration"
        )

    for name in (
        "silence_threshold",
        "mic_speech_threshold",
        "system_speech_threshold",
        "weak_speech_threshold",
    ):
        if getattr(capture_cfg, name) < 0:
            raise ConfigError(f"{name} must be non-negative")

    if capture_cfg.mic_gain <= 0 or capture_cfg.system_gain <= 0:
        raise ConfigError("mic_gain and system_gain must be positive")

    if capture_cfg.adaptive_gain_max < 1.0:
        raise ConfigError(
            f"adaptive_gain_max must be at least 1.0, got {capture_cfg.adaptive_gain_max}"
        )

    if min(capture_cfg.heartbeat_interval, capture_cfg.silence_warning, capture_cfg.dead_after) <= 0:
        raise ConfigError("heartbeat_interval, silence_warning and dead_after must be positive")

    if capture_cfg.recovery_attempts < 1:
        raise ConfigError(
            f"recovery_attempts must be at least 1, got {capture_cfg.recovery_attempts}"
        )

    if not isinstance(capture_cfg.call_apps, list) or not all(
        isinstance(app, str) and app for app in capture_cfg.call_apps
    ):
        raise ConfigError("call_apps must be a list of non-empty strings")


def validate_speech_config(speech_cfg: SpeechConfig) -> None:
    """Validate speech backend configuration.

    Raises:
        ConfigError: If speech configuration is invalid
    """
    if not speech_cfg.endpoint.startswith(("http://", "https://")):
        raise ConfigError(f"speech.endpoint must be an http(s) URL, got {speech_cfg.endpoint!r}")

    if speech_cfg.timeout <= 0:
        raise ConfigError(f"speech.timeout must be positive, got {speech_cfg.timeout}")


def validate_session_config(session_cfg: SessionConfig) -> None:
    """Validate session lifecycle configuration.

    Raises:
        ConfigError: If session configuration is invalid
    """
    if session_cfg.stop_grace_period < 0:
        raise ConfigError("stop_grace_period must be non-negative")

    if session_cfg.hard_stop_timeout <= 0:
        raise ConfigError("hard_stop_timeout must be positive")

    if session_cfg.min_command_length < 0:
        raise ConfigError("min_command_length must be non-negative")


def validate_agent_config(agent_cfg: AgentConfig) -> None:
    """Validate agent configuration.

    Raises:
        ConfigError: If agent configuration is invalid
    """
    if agent_cfg.max_steps <= 0:
        raise ConfigError(f"max_steps must be positive, got {agent_cfg.max_steps}")

    if agent_cfg.observation_limit <= 0:
        raise ConfigError(
            f"observation_limit must be positive, got {agent_cfg.observation_limit}"
        )

    if not 0.0 <= agent_cfg.temperature <= 2.0:
        raise ConfigError(f"temperature must be in [0, 2], got {agent_cfg.temperature}")

    if agent_cfg.timeout <= 0:
        raise ConfigError(f"agent.timeout must be positive, got {agent_cfg.timeout}")


def validate_tools_config(tools_cfg: ToolsConfig) -> None:
    """Validate tool limits.

    Raises:
        ConfigError: If a limit is not positive
    """
    for name in (
        "max_files",
        "max_bytes",
        "summary_limit",
        "summarizer_max_files",
        "summarizer_max_chars",
    ):
        value = getattr(tools_cfg, name)
        if value <= 0:
            raise ConfigError(f"tools.{name} must be positive, got {value}")


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().
    """
    return Config.from_toml(path, env=env)
