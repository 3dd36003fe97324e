from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence

from .models import (ConversationTurn, InterpretationResult, RecordedAudio,
                     SynthesisResult, TranscriptionResult)


class RemoteSpeechService(ABC):
    """Speech recognition and synthesis collaborator.

    Implementations raise ``TranscriptionFailed`` / ``SynthesisFailed`` (or
    ``StageTimeout``) instead of returning unsuccessful results.
    """

    @abstractmethod
    async def transcribe(self, audio: RecordedAudio) -> TranscriptionResult:
        """Convert recorded speech to text."""

    @abstractmethod
    async def synthesize(self, text: str) -> SynthesisResult:
        """Convert reply text to encoded audio."""

    async def cleanup(self):
        """Release client-side resources."""


class RemoteReasoningService(ABC):
    """Interprets a transcript into a reply and device commands."""

    @abstractmethod
    async def interpret(self, transcript: str,
                        context: Mapping[str, Any],
                        history: Sequence[ConversationTurn]) -> InterpretationResult:
        """
        Interpret what the user said.

        Args:
            transcript: Text of the user's utterance
            context: Caller-supplied facts such as the current room
            history: Snapshot of the conversation so far, oldest first

        Returns:
            Reply text and zero or more commands
        """

    async def cleanup(self):
        """Release client-side resources."""
