import asyncio
import copy
import logging
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type

from .dispatch import CallbackDispatcher, CommandCallback, CommandDispatcher
from .errors import (DispatchError, InterpretationFailed, InvalidState,
                     ResourceUnavailable, StageTimeout, SynthesisFailed,
                     TranscriptionFailed, VoicePipelineError)
from .history import DEFAULT_MAX_TURNS, ConversationHistory
from .models import Command, PipelineState, PipelineStatus, TurnResult
from .resources import AudioCaptureResource, AudioPlaybackResource, CaptureHandle
from .services import RemoteReasoningService, RemoteSpeechService

logger = logging.getLogger("pipeline")

DEFAULT_STAGE_TIMEOUT = 120.0

EVENTS = ("state", "status", "error", "transcript", "reply")


class VoicePipeline:
    """Orchestrates one voice turn at a time.

    A turn moves through the states in a fixed order::

        IDLE -> RECORDING -> TRANSCRIBING -> INTERPRETING -> EXECUTING
             -> SYNTHESIZING -> SPEAKING -> IDLE

    and returns to IDLE from any stage that fails. ``begin()`` starts
    capture, ``end()`` stops it and runs the rest of the turn, and
    ``cancel()`` abandons a recording. Nothing can be cancelled once
    transcription has started.

    Callers observe the pipeline through listeners registered with
    ``add_listener``:

    - ``state``: ``(new_state, old_state)`` on every transition
    - ``status``: the coarse ``PipelineStatus`` on every transition
    - ``error``: the ``VoicePipelineError`` that ended a turn or was raised
      by a rejected call
    - ``transcript``: the user's words once transcribed
    - ``reply``: the reply text once interpreted, shown even if it is
      never spoken
    """

    def __init__(self, capture: AudioCaptureResource,
                 playback: AudioPlaybackResource,
                 speech: RemoteSpeechService,
                 reasoning: RemoteReasoningService,
                 dispatcher: Optional[CommandDispatcher] = None,
                 on_command: Optional[CommandCallback] = None,
                 context: Optional[Mapping[str, Any]] = None,
                 max_history: int = DEFAULT_MAX_TURNS,
                 stage_timeout: float = DEFAULT_STAGE_TIMEOUT):
        """
        Initialize the pipeline.

        Args:
            capture: Microphone resource
            playback: Speaker resource
            speech: Transcription and synthesis service
            reasoning: Interpretation service
            dispatcher: Executes the commands of each turn
            on_command: Callback used as the dispatcher when none is given
            context: Facts passed to every interpretation (current room...)
            max_history: Maximum number of history entries kept
            stage_timeout: Bound in seconds on each remote call
        """
        if dispatcher is not None and on_command is not None:
            raise ValueError("Pass either a dispatcher or an on_command callback, not both")
        if dispatcher is None and on_command is not None:
            dispatcher = CallbackDispatcher(on_command)

        self.capture = capture
        self.playback = playback
        self.speech = speech
        self.reasoning = reasoning
        self.dispatcher = dispatcher
        self.context: Mapping[str, Any] = dict(context or {})
        self.stage_timeout = stage_timeout
        self.history = ConversationHistory(max_history)

        self._state = PipelineState.IDLE
        self._in_flight = False
        self._closed = False
        self._capture_handle: Optional[CaptureHandle] = None
        self._turn_context: Mapping[str, Any] = MappingProxyType({})
        self._listeners: Dict[str, List[Callable]] = {event: [] for event in EVENTS}

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def status(self) -> PipelineStatus:
        return self._state.status

    @property
    def is_idle(self) -> bool:
        return self._state is PipelineState.IDLE and not self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, event: str, callback: Callable) -> Callable[[], None]:
        """
        Register a listener for a pipeline event.

        Returns:
            A function that removes the listener
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown pipeline event: {event}")
        self._listeners[event].append(callback)

        def remove():
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)
        return remove

    def _emit(self, event: str, *args):
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Error in {event} listener")

    def _transition(self, new_state: PipelineState):
        old_state = self._state
        self._state = new_state
        logger.info(f"Voice: {old_state.value} -> {new_state.value}")
        self._emit("state", new_state, old_state)
        self._emit("status", new_state.status)

    def _reject(self, error: VoicePipelineError) -> VoicePipelineError:
        logger.warning(f"Rejected: {error}")
        self._emit("error", error)
        return error

    async def begin(self, context: Optional[Mapping[str, Any]] = None):
        """
        Start a turn by acquiring the microphone.

        Args:
            context: Context for this turn only (defaults to ``self.context``)

        Raises:
            InvalidState: a turn is already in flight, the pipeline is
                closed or the context cannot be copied
            ResourceUnavailable: the microphone cannot be acquired
        """
        if self._closed:
            raise self._reject(InvalidState("The voice pipeline is closed"))
        if not self.is_idle:
            raise self._reject(InvalidState(f"Cannot begin while {self._state.value}"))

        self._in_flight = True
        source = self.context if context is None else context
        try:
            turn_context = MappingProxyType(copy.deepcopy(dict(source)))
        except Exception as e:
            self._in_flight = False
            raise self._reject(InvalidState(f"Context cannot be copied: {e}")) from e

        try:
            if self.playback.is_open:
                raise ResourceUnavailable("The speaker is still in use")
            self._capture_handle = await self.capture.acquire()
        except ResourceUnavailable as e:
            self._in_flight = False
            raise self._reject(e)
        except BaseException:
            self._in_flight = False
            raise

        self._turn_context = turn_context
        self._transition(PipelineState.RECORDING)

    async def cancel(self):
        """Abandon the current recording and return to idle.

        Raises:
            InvalidState: the pipeline is not recording
        """
        if self._state is not PipelineState.RECORDING:
            raise self._reject(InvalidState(f"Cannot cancel while {self._state.value}"))

        handle = self._capture_handle
        self._capture_handle = None
        try:
            await self.capture.discard(handle)
        finally:
            self._in_flight = False
            self._transition(PipelineState.IDLE)
        logger.info("Recording cancelled")

    async def wait_for_end_of_speech(self):
        """Wait until the recording detects that the user stopped talking."""
        if self._state is not PipelineState.RECORDING or self._capture_handle is None:
            raise InvalidState(f"Not recording (state is {self._state.value})")
        await self._capture_handle.wait_for_silence()

    async def end(self) -> TurnResult:
        """
        Stop recording and run the rest of the turn.

        Stage failures do not raise: they are emitted to ``error``
        listeners and returned in ``TurnResult.error``.

        Raises:
            InvalidState: the pipeline is not recording
        """
        if self._state is not PipelineState.RECORDING:
            raise self._reject(InvalidState(f"Cannot end while {self._state.value}"))

        handle = self._capture_handle
        self._capture_handle = None
        result = TurnResult()
        try:
            return await self._run_turn(handle, result)
        finally:
            self._in_flight = False
            if self._state is not PipelineState.IDLE:
                self._transition(PipelineState.IDLE)

    async def _run_turn(self, handle: CaptureHandle, result: TurnResult) -> TurnResult:
        self._transition(PipelineState.TRANSCRIBING)
        try:
            audio = await self.capture.stop(handle)
        except VoicePipelineError as e:
            return self._fail(result, e)
        except Exception as e:
            return self._fail(result, TranscriptionFailed(f"Could not finish recording: {e}"))

        try:
            transcription = await self._call_stage(
                "transcription", TranscriptionFailed, self.speech.transcribe(audio))
        except VoicePipelineError as e:
            return self._fail(result, e)
        finally:
            audio.discard()
        result.transcript = transcription.transcript
        self._emit("transcript", result.transcript)
        if self._closed:
            return self._abandon(result)

        self._transition(PipelineState.INTERPRETING)
        try:
            interpretation = await self._call_stage(
                "interpretation", InterpretationFailed,
                self.reasoning.interpret(result.transcript, self._turn_context,
                                         self.history.snapshot()))
        except VoicePipelineError as e:
            return self._fail(result, e)
        result.reply = interpretation.response
        result.commands = list(interpretation.commands)
        self._emit("reply", result.reply)
        if self._closed:
            return self._abandon(result)

        self._transition(PipelineState.EXECUTING)
        result.dispatch_errors = await self._execute_commands(result.commands)
        if self._closed:
            return self._abandon(result)
        self.history.append_exchange(result.transcript, interpretation.raw_response)

        # From here on the turn has taken effect: the reply was shown, the
        # commands ran and the history holds the exchange. A synthesis or
        # playback failure only means the reply is not spoken.
        self._transition(PipelineState.SYNTHESIZING)
        try:
            synthesis = await self._call_stage(
                "synthesis", SynthesisFailed, self.speech.synthesize(result.reply))
        except VoicePipelineError as e:
            return self._fail(result, e)
        result.audio = synthesis.audio
        if self._closed:
            return self._abandon(result)

        self._transition(PipelineState.SPEAKING)
        try:
            result.spoken = await self._speak(synthesis.audio)
        except VoicePipelineError as e:
            return self._fail(result, e)

        self._transition(PipelineState.IDLE)
        return result

    async def _call_stage(self, stage: str, error_cls: Type[VoicePipelineError],
                          call: Awaitable):
        """Await a remote call within the stage timeout, mapping failures."""
        try:
            return await asyncio.wait_for(call, timeout=self.stage_timeout)
        except VoicePipelineError:
            raise
        except asyncio.TimeoutError as e:
            raise StageTimeout(stage, self.stage_timeout) from e
        except Exception as e:
            logger.exception(f"Unexpected error during {stage}")
            raise error_cls(f"{stage} failed: {e}") from e

    async def _execute_commands(self, commands: List[Command]) -> List[DispatchError]:
        """Dispatch commands one after another. Failures never stop the loop."""
        errors = []
        for index, command in enumerate(commands, start=1):
            if self._closed:
                logger.info(f"Pipeline closed, skipping {len(commands) - index + 1} command(s)")
                break
            logger.info(f"Executing command {index}/{len(commands)}: {command.name}")
            error = None
            try:
                if self.dispatcher is None:
                    raise DispatchError("No command dispatcher configured",
                                        command_name=command.name)
                await asyncio.wait_for(self.dispatcher.execute(command),
                                       timeout=self.stage_timeout)
            except DispatchError as e:
                error = e
            except asyncio.TimeoutError:
                error = DispatchError(
                    f"Command '{command.name}' timed out after {self.stage_timeout:g}s",
                    command_name=command.name)
            except Exception as e:
                error = DispatchError(f"Command '{command.name}' failed: {e}",
                                      command_name=command.name)

            if error is not None:
                logger.warning(f"Command {command.name} failed: {error}")
                errors.append(error)
        return errors

    async def _speak(self, audio: bytes) -> bool:
        """Play synthesized audio to the end. Returns False if torn down."""
        if self.capture.is_open:
            raise ResourceUnavailable("The microphone is still in use")
        await self.playback.acquire()
        try:
            handle = await self.playback.play(audio)
            return await handle.wait()
        except VoicePipelineError:
            raise
        except Exception as e:
            raise ResourceUnavailable(f"Playback failed: {e}") from e
        finally:
            await self.playback.release()

    def _fail(self, result: TurnResult, error: VoicePipelineError) -> TurnResult:
        if self._closed:
            logger.info(f"Stage failed after close: {error}")
            return self._abandon(result)
        logger.error(f"Voice turn failed during {self._state.value}: {error}")
        result.error = error
        self._emit("error", error)
        self._transition(PipelineState.IDLE)
        return result

    def _abandon(self, result: TurnResult) -> TurnResult:
        """End a turn whose pipeline was closed while a stage was running."""
        logger.info(f"Voice turn abandoned during {self._state.value}: pipeline closed")
        result.error = InvalidState("The voice pipeline was closed")
        self._emit("error", result.error)
        self._transition(PipelineState.IDLE)
        return result

    async def close(self):
        """Tear the pipeline down, releasing devices and clients.

        An in-progress playback is stopped and a recording is discarded.
        A turn still being processed is abandoned once its current stage
        returns, before it touches the history or the speaker. The
        conversation history does not survive the pipeline.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("Closing voice pipeline")

        if self._capture_handle is not None:
            handle = self._capture_handle
            self._capture_handle = None
            await self.capture.discard(handle)
            self._in_flight = False
            self._transition(PipelineState.IDLE)

        await self.playback.stop()
        self.history.clear()

        clients = []
        for client in (self.speech, self.reasoning, self.dispatcher):
            if client is not None and all(client is not seen for seen in clients):
                clients.append(client)
        for client in clients:
            try:
                await client.cleanup()
            except Exception as e:
                logger.error(f"Error cleaning up {type(client).__name__}: {e}")
