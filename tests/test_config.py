import logging
from pathlib import Path

import pytest
import yaml

from voice_pipeline.config import (DEFAULT_END_PHRASES, LOG_FORMAT,
                                   LoggingConfig, PipelineConfig,
                                   configure_logging)
from voice_pipeline.errors import ConfigurationError

EXAMPLE_CONFIG = Path(__file__).parent.parent / "config" / "pipeline.yaml"

MINIMAL = {"backend": {"url": "http://backend.local:3000", "api_key": "key"}}


class TestPipelineConfig:

    def test_from_file(self, tmp_path):
        config_file = tmp_path / "pipeline.yaml"
        config_file.write_text(yaml.safe_dump({
            "backend": {"url": "http://backend.local:3000/", "api_key": "key", "timeout": 30},
            "audio": {"input_device": 2, "sample_rate": 44100},
            "history": {"max_turns": 6},
            "conversation": {"end_phrases": ["over and out"]},
        }))

        config = PipelineConfig.from_file(str(config_file))

        assert config.backend.timeout == 30
        assert config.audio.input_device == 2
        assert config.audio.sample_rate == 44100
        assert config.audio.channels == 1
        assert config.history.max_turns == 6
        assert config.conversation.end_phrases == ["over and out"]

    def test_defaults(self):
        config = PipelineConfig.from_dict(MINIMAL, environ={})

        assert config.backend.timeout == 120.0
        assert config.backend.voice == "alloy"
        assert config.history.max_turns == 10
        assert config.conversation.silence_secs == 0.6
        assert config.conversation.end_phrases == DEFAULT_END_PHRASES
        assert not config.home_assistant.enabled

    def test_environment_overrides(self):
        environ = {
            "VOICE_BACKEND_URL": "http://env-backend:3000",
            "VOICE_BACKEND_API_KEY": "env-key",
            "HOME_ASSISTANT_URL": "http://ha.local:8123",
            "HOME_ASSISTANT_TOKEN": "env-token",
        }

        config = PipelineConfig.from_dict({"backend": {"url": "http://file"}}, environ=environ)

        assert config.backend.url == "http://env-backend:3000"
        assert config.backend.api_key == "env-key"
        assert config.home_assistant.enabled
        assert config.home_assistant.token == "env-token"

    def test_empty_environment_value_ignored(self):
        config = PipelineConfig.from_dict(MINIMAL, environ={"VOICE_BACKEND_API_KEY": ""})

        assert config.backend.api_key == "key"

    @pytest.mark.parametrize("backend", [
        {"url": "", "api_key": "key"},
        {"url": "http://backend.local:3000"},
    ])
    def test_missing_backend_settings(self, backend):
        with pytest.raises(ConfigurationError) as exc_info:
            PipelineConfig.from_dict({"backend": backend}, environ={})
        assert "Configuration missing" in str(exc_info.value)

    def test_unknown_key(self):
        data = dict(MINIMAL, audio={"sample_rte": 16000})

        with pytest.raises(ConfigurationError) as exc_info:
            PipelineConfig.from_dict(data, environ={})
        assert "sample_rte" in str(exc_info.value)

    def test_invalid_history_size(self):
        data = dict(MINIMAL, history={"max_turns": 0})

        with pytest.raises(ConfigurationError):
            PipelineConfig.from_dict(data, environ={})

    def test_file_must_hold_a_mapping(self, tmp_path):
        config_file = tmp_path / "pipeline.yaml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError):
            PipelineConfig.from_file(str(config_file))

    def test_example_config_loads(self, monkeypatch):
        monkeypatch.setenv("VOICE_BACKEND_API_KEY", "example-key")

        config = PipelineConfig.from_file(str(EXAMPLE_CONFIG))

        assert config.backend.api_key == "example-key"
        assert config.history.max_turns == 10


class TestConfigureLogging:

    def test_stdout_and_file_handlers(self, tmp_path, monkeypatch):
        captured = {}
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: captured.update(kwargs))

        configure_logging(LoggingConfig(level="debug", file=str(tmp_path / "voice.log")))

        handlers = captured["handlers"]
        assert captured["level"] == logging.DEBUG
        assert captured["format"] == LOG_FORMAT
        assert isinstance(handlers[0], logging.StreamHandler)
        assert isinstance(handlers[1], logging.FileHandler)
        for handler in handlers:
            handler.close()

    def test_unknown_level_falls_back_to_info(self, monkeypatch):
        captured = {}
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: captured.update(kwargs))

        configure_logging(LoggingConfig(level="chatty"))

        assert captured["level"] == logging.INFO
        assert len(captured["handlers"]) == 1
