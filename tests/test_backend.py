"""
Tests for the voice backend client against a local aiohttp server.
"""

import asyncio
import base64

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from voice_pipeline.backend import VoiceBackendClient
from voice_pipeline.errors import (InterpretationFailed, StageTimeout,
                                   SynthesisFailed, TranscriptionFailed)
from voice_pipeline.models import (Command, ConversationTurn, RecordedAudio)


class BackendStub:
    """Records requests and answers with canned replies per path."""

    def __init__(self):
        self.received = []
        self.replies = {}
        self.delay = 0.0
        self.url = None

    def reply(self, path, payload, status=200):
        self.replies[path] = (status, payload)

    async def handle(self, request):
        if request.content_type.startswith("multipart/"):
            form = await request.post()
            body = {}
            for key, value in form.items():
                if hasattr(value, "file"):
                    body[key] = {
                        "data": value.file.read(),
                        "filename": value.filename,
                        "content_type": value.content_type,
                    }
                else:
                    body[key] = value
        else:
            body = await request.json()
        self.received.append((request.path, body))

        if self.delay:
            await asyncio.sleep(self.delay)
        status, payload = self.replies[request.path]
        if isinstance(payload, str):
            return web.Response(text=payload, status=status)
        return web.json_response(payload, status=status)


@pytest_asyncio.fixture
async def backend():
    stub = BackendStub()
    app = web.Application()
    app.router.add_post("/api/voice/{action}", stub.handle)
    server = TestServer(app)
    await server.start_server()
    stub.url = str(server.make_url("/"))
    yield stub
    await server.close()


@pytest_asyncio.fixture
async def client(backend):
    client = VoiceBackendClient(backend.url, "secret-key")
    yield client
    await client.cleanup()


def recording(data=b"RIFF0000WAVEfmt "):
    return RecordedAudio(data=data, duration=1.2)


class TestTranscribe:

    @pytest.mark.asyncio
    async def test_sends_multipart_upload(self, backend, client):
        backend.reply("/api/voice/transcribe", {"success": True, "transcript": "hello"})

        await client.transcribe(recording())

        path, body = backend.received[0]
        assert path == "/api/voice/transcribe"
        assert body["audio"]["data"] == b"RIFF0000WAVEfmt "
        assert body["audio"]["filename"] == "audio.wav"
        assert body["audio"]["content_type"] == "audio/wav"
        assert body["api_key"] == "secret-key"
        assert body["language"] == "en"

    @pytest.mark.asyncio
    async def test_returns_trimmed_transcript(self, backend, client):
        backend.reply("/api/voice/transcribe",
                      {"success": True, "transcript": "  turn on the lights "})

        result = await client.transcribe(recording())

        assert result.transcript == "turn on the lights"

    @pytest.mark.asyncio
    async def test_unsuccessful_payload(self, backend, client):
        backend.reply("/api/voice/transcribe", {"success": False, "error": "empty audio"})

        with pytest.raises(TranscriptionFailed) as exc_info:
            await client.transcribe(recording())

        assert str(exc_info.value) == "empty audio"

    @pytest.mark.asyncio
    async def test_blank_transcript(self, backend, client):
        backend.reply("/api/voice/transcribe", {"success": True, "transcript": "   "})

        with pytest.raises(TranscriptionFailed) as exc_info:
            await client.transcribe(recording())

        assert str(exc_info.value) == "No speech detected"

    @pytest.mark.asyncio
    async def test_empty_audio_is_not_uploaded(self, backend, client):
        with pytest.raises(TranscriptionFailed):
            await client.transcribe(recording(b""))

        assert backend.received == []

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        client = VoiceBackendClient("http://127.0.0.1:1", "secret-key")
        try:
            with pytest.raises(TranscriptionFailed):
                await client.transcribe(recording())
        finally:
            await client.cleanup()


class TestInterpret:

    @pytest.mark.asyncio
    async def test_sends_transcript_context_and_history(self, backend, client):
        backend.reply("/api/voice/process", {"success": True, "response": "Done"})
        history = (
            ConversationTurn("user", "is the door locked"),
            ConversationTurn("assistant", "Yes, the front door is locked"),
        )

        await client.interpret("unlock it", {"room": "hallway"}, history)

        path, body = backend.received[0]
        assert path == "/api/voice/process"
        assert body == {
            "transcript": "unlock it",
            "api_key": "secret-key",
            "context": {"room": "hallway"},
            "history": [
                {"role": "user", "content": "is the door locked"},
                {"role": "assistant", "content": "Yes, the front door is locked"},
            ],
        }

    @pytest.mark.asyncio
    async def test_parses_reply_and_commands(self, backend, client):
        backend.reply("/api/voice/process", {
            "success": True,
            "response": "Turning on the kitchen lights",
            "raw_response": "Turning on the kitchen lights [light.turn_on]",
            "commands": [
                {"name": "light.turn_on", "parameters": {"entity_id": "light.kitchen"}},
                {"parameters": {"entity_id": "light.hall"}},
                "scene.movie",
                {"name": "media_player.pause"},
            ],
        })

        result = await client.interpret("kitchen lights on", {}, ())

        assert result.response == "Turning on the kitchen lights"
        assert result.raw_response == "Turning on the kitchen lights [light.turn_on]"
        assert result.commands == [
            Command("light.turn_on", {"entity_id": "light.kitchen"}),
            Command("media_player.pause"),
        ]

    @pytest.mark.asyncio
    async def test_raw_response_defaults_to_response(self, backend, client):
        backend.reply("/api/voice/process", {"success": True, "response": "Hello"})

        result = await client.interpret("hi", {}, ())

        assert result.raw_response == "Hello"
        assert result.commands == []

    @pytest.mark.asyncio
    async def test_commands_must_be_a_list(self, backend, client):
        backend.reply("/api/voice/process",
                      {"success": True, "response": "Hello", "commands": {"name": "x"}})

        with pytest.raises(InterpretationFailed):
            await client.interpret("hi", {}, ())

    @pytest.mark.asyncio
    async def test_error_status_uses_payload_error(self, backend, client):
        backend.reply("/api/voice/process",
                      {"success": False, "error": "Processing failed"}, status=500)

        with pytest.raises(InterpretationFailed) as exc_info:
            await client.interpret("hi", {}, ())

        assert str(exc_info.value) == "Processing failed"

    @pytest.mark.asyncio
    async def test_error_status_without_json(self, backend, client):
        backend.reply("/api/voice/process", "<html>Bad gateway</html>", status=502)

        with pytest.raises(InterpretationFailed) as exc_info:
            await client.interpret("hi", {}, ())

        assert "status 502" in str(exc_info.value)


class TestSynthesize:

    @pytest.mark.asyncio
    async def test_decodes_audio(self, backend, client):
        audio = b"ID3\x03\x00fake-mp3-frames"
        backend.reply("/api/voice/speak", {
            "success": True,
            "audio": base64.b64encode(audio).decode("ascii"),
        })

        result = await client.synthesize("Good morning")

        assert result.audio == audio
        path, body = backend.received[0]
        assert body == {"text": "Good morning", "api_key": "secret-key", "voice": "alloy"}

    @pytest.mark.asyncio
    async def test_invalid_base64(self, backend, client):
        backend.reply("/api/voice/speak", {"success": True, "audio": "not base64!"})

        with pytest.raises(SynthesisFailed):
            await client.synthesize("Good morning")

    @pytest.mark.asyncio
    async def test_missing_audio(self, backend, client):
        backend.reply("/api/voice/speak", {"success": True})

        with pytest.raises(SynthesisFailed):
            await client.synthesize("Good morning")

    @pytest.mark.asyncio
    async def test_timeout(self, backend):
        backend.reply("/api/voice/speak", {"success": True, "audio": ""})
        backend.delay = 1.0
        client = VoiceBackendClient(backend.url, "secret-key", timeout=0.1)
        try:
            with pytest.raises(StageTimeout) as exc_info:
                await client.synthesize("Good morning")
        finally:
            await client.cleanup()

        assert exc_info.value.stage == "synthesis"


class TestCleanup:

    @pytest.mark.asyncio
    async def test_closes_session(self, backend, client):
        backend.reply("/api/voice/speak",
                      {"success": True, "audio": base64.b64encode(b"x").decode()})
        await client.synthesize("hi")
        session = client.session

        await client.cleanup()

        assert session.closed
        assert client.session is None
