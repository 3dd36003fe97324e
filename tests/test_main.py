import argparse
import logging

import pytest

try:
    from voice_pipeline import __main__ as cli
except OSError:
    pytest.skip("PortAudio library not available", allow_module_level=True)


def make_args(config, context=None, conversation=False):
    return argparse.Namespace(config=config, context=context, conversation=conversation)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: None)
    path = tmp_path / "pipeline.yaml"
    path.write_text("backend:\n  url: http://backend.local:3000\n  api_key: key\n")
    return str(path)


class TestRun:

    @pytest.mark.asyncio
    async def test_missing_config_file(self, tmp_path, capsys):
        code = await cli.run(make_args(str(tmp_path / "missing.yaml")))

        assert code == 1
        assert "Configuration error" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_incomplete_config(self, tmp_path, capsys, monkeypatch):
        monkeypatch.delenv("VOICE_BACKEND_URL", raising=False)
        path = tmp_path / "pipeline.yaml"
        path.write_text("backend:\n  url: ''\n")

        code = await cli.run(make_args(str(path)))

        assert code == 1
        assert "Configuration missing" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_invalid_context(self, config_file, capsys, monkeypatch):
        monkeypatch.setattr(cli, "create_pipeline", pytest.fail)

        code = await cli.run(make_args(config_file, context="{room: kitchen}"))

        assert code == 1
        assert "Invalid --context JSON" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_push_to_talk_quits(self, config_file, monkeypatch, make_pipeline):
        pipeline = make_pipeline()
        received = {}

        def create_pipeline(config, context=None):
            received["context"] = context
            return pipeline

        monkeypatch.setattr(cli, "create_pipeline", create_pipeline)
        monkeypatch.setattr("builtins.input", lambda prompt: "q")

        code = await cli.run(make_args(config_file, context='{"room": "kitchen"}'))

        assert code == 0
        assert received["context"] == {"room": "kitchen"}
        assert pipeline.closed
