from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of error surfaced by the voice pipeline."""

    RESOURCE_UNAVAILABLE = "resource_unavailable"
    INVALID_STATE = "invalid_state"
    TRANSCRIPTION_FAILED = "transcription_failed"
    INTERPRETATION_FAILED = "interpretation_failed"
    SYNTHESIS_FAILED = "synthesis_failed"
    DISPATCH_ERROR = "dispatch_error"
    TIMEOUT = "timeout"


class VoicePipelineError(Exception):
    """Base class for all errors raised or emitted by the pipeline."""

    kind: ErrorKind = ErrorKind.INVALID_STATE

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.kind.value.replace("_", " ")

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ConfigurationError(Exception):
    """Raised when the pipeline configuration is missing required values."""


class ResourceUnavailable(VoicePipelineError):
    kind = ErrorKind.RESOURCE_UNAVAILABLE


class InvalidState(VoicePipelineError):
    kind = ErrorKind.INVALID_STATE


class TranscriptionFailed(VoicePipelineError):
    kind = ErrorKind.TRANSCRIPTION_FAILED


class InterpretationFailed(VoicePipelineError):
    kind = ErrorKind.INTERPRETATION_FAILED


class SynthesisFailed(VoicePipelineError):
    kind = ErrorKind.SYNTHESIS_FAILED


class DispatchError(VoicePipelineError):
    """A single command could not be executed. Never fatal to a turn."""

    kind = ErrorKind.DISPATCH_ERROR

    def __init__(self, message: str = "", command_name: Optional[str] = None):
        super().__init__(message)
        self.command_name = command_name


class StageTimeout(VoicePipelineError):
    """A network stage exceeded its time bound."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, stage: str, timeout: float):
        super().__init__(f"{stage} timed out after {timeout:g}s")
        self.stage = stage
        self.timeout = timeout
