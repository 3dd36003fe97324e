"""
Hands-free, multi-turn conversation on top of a VoicePipeline.

The session keeps starting turns without a button press: it listens,
stops recording when the user goes quiet (or after a failsafe limit),
runs the turn, and listens again until the user says goodbye.
"""

import asyncio
import logging
from typing import Any, Callable, Iterable, List, Mapping, Optional

from .config import (DEFAULT_END_PHRASES, DEFAULT_FAREWELLS,
                     DEFAULT_NAME_VARIANTS, ConversationConfig)
from .errors import VoicePipelineError
from .models import PipelineState, PipelineStatus, TurnResult
from .pipeline import VoicePipeline

logger = logging.getLogger("session")


class EndPhraseDetector:
    """Recognizes phrases that close a conversation."""

    def __init__(self, end_phrases: Iterable[str] = DEFAULT_END_PHRASES,
                 name_variants: Iterable[str] = DEFAULT_NAME_VARIANTS,
                 farewells: Iterable[str] = DEFAULT_FAREWELLS):
        self.end_phrases = [p.lower() for p in end_phrases]
        self.name_variants = [n.lower() for n in name_variants]
        self.farewells = [f.lower() for f in farewells]

    def is_end_phrase(self, text: str) -> bool:
        """True if the text contains an end phrase or thanks the assistant."""
        clean = (text or "").lower().strip()
        if not clean:
            return False
        if any(phrase in clean for phrase in self.end_phrases):
            return True
        for thanks in ("thank you", "thanks"):
            for name in self.name_variants:
                if f"{thanks} {name}" in clean:
                    return True
        return False

    def is_farewell(self, reply: str) -> bool:
        """True if the assistant's reply says goodbye."""
        clean = (reply or "").lower()
        return self.is_end_phrase(clean) or any(word in clean for word in self.farewells)

    def should_end(self, result: TurnResult) -> bool:
        if result.transcript and self.is_end_phrase(result.transcript):
            logger.info(f"End phrase detected: '{result.transcript}'")
            return True
        if result.reply and self.is_farewell(result.reply):
            logger.info("Goodbye detected in response, ending session")
            return True
        return False


class ConversationSession:
    """Runs voice turns back to back until the conversation ends."""

    def __init__(self, pipeline: VoicePipeline,
                 config: Optional[ConversationConfig] = None,
                 on_status: Optional[Callable[[PipelineStatus], None]] = None):
        """
        Initialize the session.

        Args:
            pipeline: Pipeline used for every turn
            config: Timing, end-phrase and error-limit settings
            on_status: Receives LISTENING when a turn starts and ENDED
                when the session is over
        """
        self.pipeline = pipeline
        self.config = config or ConversationConfig()
        self.on_status = on_status
        self.detector = EndPhraseDetector(
            self.config.end_phrases,
            self.config.name_variants,
            self.config.farewells
        )
        self._active = False
        self._stop_event = asyncio.Event()

    @property
    def active(self) -> bool:
        return self._active

    def _set_status(self, status: PipelineStatus):
        if self.on_status is None:
            return
        try:
            self.on_status(status)
        except Exception:
            logger.exception("Error in session status callback")

    async def run(self, context: Optional[Mapping[str, Any]] = None) -> List[TurnResult]:
        """
        Hold a conversation until it ends.

        Returns:
            The results of every completed turn, in order
        """
        if self._active:
            raise RuntimeError("Conversation session already running")

        self._active = True
        self._stop_event.clear()
        self.pipeline.history.clear()
        logger.info("Conversation session started")

        results = []
        consecutive_errors = 0
        try:
            while self._active and not self.pipeline.closed:
                result = await self.run_turn(context)
                if result is None:
                    break
                results.append(result)

                if result.error is not None:
                    consecutive_errors += 1
                    if consecutive_errors >= self.config.max_consecutive_errors:
                        logger.error(f"Ending session after {consecutive_errors} failed turns")
                        break
                    # A fresh turn, not a retry of the failed stage
                    await self._pause(self.config.error_pause_secs)
                    continue

                consecutive_errors = 0
                if self.detector.should_end(result):
                    break
                await self._pause(self.config.turn_pause_secs)
        finally:
            self._active = False
            self.pipeline.history.clear()
            logger.info("Conversation session ended")
            self._set_status(PipelineStatus.ENDED)

        return results

    async def run_turn(self, context: Optional[Mapping[str, Any]] = None) -> Optional[TurnResult]:
        """
        Listen for one utterance and run it through the pipeline.

        Returns:
            The turn result, or None if the session was stopped while
            listening
        """
        self._set_status(PipelineStatus.LISTENING)
        try:
            await self.pipeline.begin(context)
        except VoicePipelineError as e:
            return TurnResult(error=e)

        speech_done = asyncio.ensure_future(self.pipeline.wait_for_end_of_speech())
        stopped = asyncio.ensure_future(self._stop_event.wait())
        done, pending = await asyncio.wait(
            {speech_done, stopped},
            timeout=self.config.max_record_secs,
            return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if speech_done in done and speech_done.exception() is not None:
            logger.warning(f"End-of-speech detection failed: {speech_done.exception()}")

        if self.pipeline.state is not PipelineState.RECORDING:
            # The pipeline was closed under us
            return None
        if self._stop_event.is_set():
            await self.pipeline.cancel()
            return None
        if not done:
            logger.info(f"No end of speech after {self.config.max_record_secs}s, stopping recording")

        return await self.pipeline.end()

    async def _pause(self, seconds: float):
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self):
        """Ask the session to end.

        A recording in progress is discarded; a turn already being
        processed runs to completion first.
        """
        if self._active:
            logger.info("Conversation session stop requested")
        self._active = False
        self._stop_event.set()
