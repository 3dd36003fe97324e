import asyncio
import base64
import binascii
import logging
from typing import Any, Dict, Mapping, Optional, Sequence, Type

import aiohttp

from .errors import (InterpretationFailed, StageTimeout, SynthesisFailed,
                     TranscriptionFailed, VoicePipelineError)
from .models import (Command, ConversationTurn, InterpretationResult,
                     RecordedAudio, SynthesisResult, TranscriptionResult)
from .services import RemoteReasoningService, RemoteSpeechService

logger = logging.getLogger("backend")

TRANSCRIBE_PATH = "/api/voice/transcribe"
INTERPRET_PATH = "/api/voice/process"
SYNTHESIZE_PATH = "/api/voice/speak"

# Two minute bound on each backend request
DEFAULT_TIMEOUT = 120.0


class VoiceBackendClient(RemoteSpeechService, RemoteReasoningService):
    """Client for the voice endpoints of the home-control backend."""

    def __init__(self, base_url: str, api_key: str,
                 timeout: float = DEFAULT_TIMEOUT,
                 language: str = "en",
                 voice: str = "alloy",
                 transcribe_path: str = TRANSCRIBE_PATH,
                 interpret_path: str = INTERPRET_PATH,
                 synthesize_path: str = SYNTHESIZE_PATH):
        """
        Initialize the backend client.

        Args:
            base_url: Base URL of the backend
            api_key: Credential forwarded with every request
            timeout: Timeout for each request in seconds
            language: Language hint for transcription
            voice: Voice used for synthesis
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.language = language
        self.voice = voice
        self.transcribe_path = transcribe_path
        self.interpret_path = interpret_path
        self.synthesize_path = synthesize_path
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create an HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    async def transcribe(self, audio: RecordedAudio) -> TranscriptionResult:
        if audio.is_empty:
            raise TranscriptionFailed("empty audio")

        form = aiohttp.FormData()
        form.add_field("audio", audio.data,
                       filename=audio.filename,
                       content_type=audio.content_type)
        form.add_field("api_key", self.api_key)
        form.add_field("language", self.language)

        payload = await self._post("transcription", self.transcribe_path,
                                   TranscriptionFailed, data=form)

        transcript = payload.get("transcript")
        if not isinstance(transcript, str) or not transcript.strip():
            raise TranscriptionFailed("No speech detected")
        transcript = transcript.strip()
        logger.info(f"Transcribed: '{transcript}'")
        return TranscriptionResult(transcript=transcript)

    async def interpret(self, transcript: str,
                        context: Mapping[str, Any],
                        history: Sequence[ConversationTurn]) -> InterpretationResult:
        body = {
            "transcript": transcript,
            "api_key": self.api_key,
            "context": dict(context or {}),
            "history": [turn.to_dict() for turn in history],
        }
        payload = await self._post("interpretation", self.interpret_path,
                                   InterpretationFailed, json=body)

        response = payload.get("response")
        if not isinstance(response, str):
            raise InterpretationFailed("Response text missing from interpretation")
        raw_response = payload.get("raw_response")
        if not isinstance(raw_response, str) or not raw_response:
            raw_response = response

        commands_data = payload.get("commands") or []
        if not isinstance(commands_data, list):
            raise InterpretationFailed("Commands must be a list")
        commands = []
        for entry in commands_data:
            try:
                commands.append(Command.from_dict(entry))
            except ValueError as e:
                logger.warning(f"Ignoring malformed command: {e}")

        logger.info(f"Response: '{response}' with {len(commands)} command(s)")
        return InterpretationResult(
            response=response,
            raw_response=raw_response,
            commands=commands
        )

    async def synthesize(self, text: str) -> SynthesisResult:
        body = {
            "text": text,
            "api_key": self.api_key,
            "voice": self.voice,
        }
        payload = await self._post("synthesis", self.synthesize_path,
                                   SynthesisFailed, json=body)

        encoded = payload.get("audio")
        if not isinstance(encoded, str) or not encoded:
            raise SynthesisFailed("No audio in synthesis response")
        try:
            audio = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SynthesisFailed(f"Invalid audio encoding: {e}") from e
        return SynthesisResult(audio=audio)

    async def _post(self, stage: str, path: str,
                    error_cls: Type[VoicePipelineError],
                    **kwargs) -> Dict[str, Any]:
        """
        POST to a backend endpoint and return the successful payload.

        Any transport error, non-2xx status, undecodable body or
        ``success: false`` payload raises ``error_cls``; exceeding the
        timeout raises ``StageTimeout``.
        """
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.post(
                url,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                **kwargs
            ) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None

                if not 200 <= response.status < 300:
                    detail = payload.get("error") if isinstance(payload, dict) else None
                    logger.error(f"{stage} request failed: {response.status} {detail or ''}")
                    raise error_cls(detail or f"{stage} failed with status {response.status}")

        except asyncio.TimeoutError as e:
            logger.error(f"{stage} request timed out after {self.timeout}s")
            raise StageTimeout(stage, self.timeout) from e
        except aiohttp.ClientError as e:
            logger.error(f"HTTP error during {stage}: {e}")
            raise error_cls(f"{stage} request failed: {e}") from e

        if not isinstance(payload, dict):
            raise error_cls(f"Malformed {stage} response")
        if not payload.get("success"):
            raise error_cls(payload.get("error") or f"{stage} failed")
        return payload

    async def cleanup(self):
        """Close the HTTP session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
