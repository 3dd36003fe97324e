import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import DispatchError, VoicePipelineError

logger = logging.getLogger("models")


class PipelineState(str, Enum):
    """States of a single voice turn. Exactly one is current at a time."""

    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    INTERPRETING = "interpreting"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    SPEAKING = "speaking"

    @property
    def status(self) -> "PipelineStatus":
        return _STATUS_BY_STATE[self]


class PipelineStatus(str, Enum):
    """Coarse status reported to the UI for feedback."""

    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    # Only reported by a hands-free conversation session
    LISTENING = "listening"
    ENDED = "ended"


_STATUS_BY_STATE = {
    PipelineState.IDLE: PipelineStatus.IDLE,
    PipelineState.RECORDING: PipelineStatus.RECORDING,
    PipelineState.TRANSCRIBING: PipelineStatus.PROCESSING,
    PipelineState.INTERPRETING: PipelineStatus.PROCESSING,
    PipelineState.EXECUTING: PipelineStatus.PROCESSING,
    PipelineState.SYNTHESIZING: PipelineStatus.PROCESSING,
    PipelineState.SPEAKING: PipelineStatus.SPEAKING,
}


USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str

    def __post_init__(self):
        if self.role not in (USER_ROLE, ASSISTANT_ROLE):
            raise ValueError(f"Unknown conversation role: {self.role!r}")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Command:
    """A device-control command. Its meaning belongs to the dispatcher."""

    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Command":
        """Build a command from a backend payload entry."""
        if not isinstance(data, Mapping):
            raise ValueError(f"Command must be an object, got {type(data).__name__}")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"Command without a name: {data!r}")
        parameters = data.get("parameters") or {}
        if not isinstance(parameters, Mapping):
            raise ValueError(f"Command parameters must be an object: {data!r}")
        return cls(name=name, parameters=dict(parameters))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "parameters": dict(self.parameters)}


@dataclass
class RecordedAudio:
    """A finished recording: the encoded audio and where it is stored."""

    data: bytes
    path: Optional[str] = None
    sample_rate: int = 16000
    duration: float = 0.0
    content_type: str = "audio/wav"
    filename: str = "audio.wav"

    @property
    def is_empty(self) -> bool:
        return not self.data

    def discard(self):
        """Delete the backing file, if any. Safe to call more than once."""
        if self.path and os.path.exists(self.path):
            try:
                os.remove(self.path)
            except OSError as e:
                logger.warning(f"Could not remove recording {self.path}: {e}")
        self.path = None


@dataclass
class TranscriptionResult:
    transcript: str


@dataclass
class InterpretationResult:
    response: str
    raw_response: str
    commands: List[Command] = field(default_factory=list)


@dataclass
class SynthesisResult:
    audio: bytes
    content_type: str = "audio/mpeg"


@dataclass
class TurnResult:
    """Outcome of one voice turn, returned by ``VoicePipeline.end()``.

    ``reply`` is set as soon as interpretation succeeds, so a turn whose
    synthesis fails still carries the text to display.
    """

    transcript: Optional[str] = None
    reply: Optional[str] = None
    commands: List[Command] = field(default_factory=list)
    dispatch_errors: List[DispatchError] = field(default_factory=list)
    audio: Optional[bytes] = None
    spoken: bool = False
    error: Optional[VoicePipelineError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None
