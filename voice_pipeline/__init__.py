"""
Voice command pipeline for a Home Assistant controller.

A user presses a control and speaks; the pipeline records the audio, has
the backend transcribe and interpret it against the recent conversation,
executes the resulting device commands and speaks the reply.
"""

from .dispatch import CallbackDispatcher, CommandDispatcher, HomeAssistantDispatcher
from .errors import (ConfigurationError, DispatchError, ErrorKind,
                     InterpretationFailed, InvalidState, ResourceUnavailable,
                     StageTimeout, SynthesisFailed, TranscriptionFailed,
                     VoicePipelineError)
from .history import ConversationHistory
from .models import (Command, ConversationTurn, PipelineState, PipelineStatus,
                     RecordedAudio, TurnResult)
from .pipeline import VoicePipeline
from .session import ConversationSession, EndPhraseDetector

__version__ = "0.2.0"
