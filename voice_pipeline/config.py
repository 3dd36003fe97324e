import logging
import os
import sys
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger("config")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

DEFAULT_END_PHRASES = [
    "thank you butler",
    "thanks butler",
    "goodbye butler",
    "bye butler",
    "thank you",
    "thanks",
    "goodbye",
    "good bye",
    "bye",
    "stop",
    "cancel",
    "end session",
    "that's all",
    "that is all",
    "thats all",
]

# Ways speech recognition tends to hear the assistant's name
DEFAULT_NAME_VARIANTS = ["butler", "buffer", "but ler", "battler", "bottle", "butter"]

DEFAULT_FAREWELLS = ["goodbye", "farewell", "have a great"]


@dataclass
class AudioConfig:
    input_device: Optional[int] = None
    output_device: Optional[int] = None
    sample_rate: int = 16000
    channels: int = 1
    chunk_size: int = 512
    recordings_dir: Optional[str] = None


@dataclass
class BackendConfig:
    url: str = ""
    api_key: str = ""
    timeout: float = 120.0
    language: str = "en"
    voice: str = "alloy"
    transcribe_path: str = "/api/voice/transcribe"
    interpret_path: str = "/api/voice/process"
    synthesize_path: str = "/api/voice/speak"


@dataclass
class HistoryConfig:
    max_turns: int = 10


@dataclass
class HomeAssistantConfig:
    url: str = ""
    token: str = ""
    verify_ssl: bool = True
    timeout: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass
class ConversationConfig:
    max_record_secs: float = 15.0
    silence_secs: float = 0.6
    speech_threshold_db: float = -40.0
    silence_threshold_db: float = -50.0
    turn_pause_secs: float = 0.5
    error_pause_secs: float = 2.0
    max_consecutive_errors: int = 3
    end_phrases: List[str] = field(default_factory=lambda: list(DEFAULT_END_PHRASES))
    name_variants: List[str] = field(default_factory=lambda: list(DEFAULT_NAME_VARIANTS))
    farewells: List[str] = field(default_factory=lambda: list(DEFAULT_FAREWELLS))


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class PipelineConfig:
    backend: BackendConfig
    audio: AudioConfig = field(default_factory=AudioConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    home_assistant: HomeAssistantConfig = field(default_factory=HomeAssistantConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, config_path: str) -> "PipelineConfig":
        """Load configuration from a YAML file."""
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"{config_path} does not contain a mapping")
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any],
                  environ: Optional[Dict[str, str]] = None) -> "PipelineConfig":
        """Build configuration from a mapping, applying environment overrides."""
        environ = os.environ if environ is None else environ
        data = {key: dict(value or {}) for key, value in config_data.items()}

        # Fill in environment variables for sensitive data
        overrides = {
            "VOICE_BACKEND_URL": ("backend", "url"),
            "VOICE_BACKEND_API_KEY": ("backend", "api_key"),
            "HOME_ASSISTANT_URL": ("home_assistant", "url"),
            "HOME_ASSISTANT_TOKEN": ("home_assistant", "token"),
        }
        for variable, (section, key) in overrides.items():
            if environ.get(variable):
                data.setdefault(section, {})[key] = environ[variable]

        config = cls(
            backend=_section(BackendConfig, data, "backend"),
            audio=_section(AudioConfig, data, "audio"),
            history=_section(HistoryConfig, data, "history"),
            home_assistant=_section(HomeAssistantConfig, data, "home_assistant"),
            conversation=_section(ConversationConfig, data, "conversation"),
            logging=_section(LoggingConfig, data, "logging"),
        )
        config.validate()
        return config

    def validate(self):
        if not self.backend.url or not self.backend.api_key:
            raise ConfigurationError("Configuration missing: backend url and api_key are required")
        if self.history.max_turns < 1:
            raise ConfigurationError("history.max_turns must be at least 1")
        if self.backend.timeout <= 0:
            raise ConfigurationError("backend.timeout must be positive")


def _section(section_cls, data: Dict[str, Any], name: str):
    values = data.get(name, {})
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{name}': {', '.join(sorted(unknown))}")
    return section_cls(**values)


def configure_logging(config: LoggingConfig):
    """Set up logging for the command-line runner."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if config.file:
        handlers.append(logging.FileHandler(config.file))
    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )
