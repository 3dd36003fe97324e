"""
Audio device resources with explicit ownership.

The microphone and the speaker are process-wide resources. Each is
represented by a ``DeviceClaim`` that admits a single holder at a time;
``AudioCaptureResource`` and ``AudioPlaybackResource`` take the claim on
acquire and give it back on release, so two pipelines (or one pipeline
misbehaving) can never hold the same device twice.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from .errors import InvalidState, ResourceUnavailable
from .models import RecordedAudio

logger = logging.getLogger("resources")


class DeviceClaim:
    """Exclusive-holder claim on a physical audio device."""

    def __init__(self, device: str):
        self.device = device
        self._holder: Optional[Any] = None
        self._lock = threading.Lock()

    @property
    def holder(self) -> Optional[Any]:
        return self._holder

    @property
    def is_held(self) -> bool:
        return self._holder is not None

    def claim(self, owner: Any):
        """Take the device for ``owner`` or raise ``ResourceUnavailable``."""
        with self._lock:
            if self._holder is not None:
                raise ResourceUnavailable(f"The {self.device} is already in use")
            self._holder = owner
        logger.debug(f"{self.device} claimed by {owner!r}")

    def release(self, owner: Any):
        with self._lock:
            if self._holder is not owner:
                raise InvalidState(f"The {self.device} is not held by {owner!r}")
            self._holder = None
        logger.debug(f"{self.device} released by {owner!r}")


MICROPHONE = DeviceClaim("microphone")
SPEAKER = DeviceClaim("speaker")


class CaptureHandle:
    """An open recording. Stopped exactly once, by its resource."""

    def __init__(self):
        self.stopped = False
        self._speech_ended = asyncio.Event()

    def mark_speech_ended(self):
        """Signal that the speaker has stopped talking."""
        self._speech_ended.set()

    @property
    def speech_ended(self) -> bool:
        return self._speech_ended.is_set()

    async def wait_for_silence(self):
        """Wait until end of speech is detected on this recording."""
        await self._speech_ended.wait()


class PlaybackHandle:
    """A started playback whose completion is signaled exactly once."""

    def __init__(self):
        self._done = asyncio.get_running_loop().create_future()
        self.interrupted = False

    @property
    def done(self) -> bool:
        return self._done.done()

    def complete(self, interrupted: bool = False) -> bool:
        """Mark playback finished. Returns False if already signaled."""
        if self._done.done():
            return False
        self.interrupted = interrupted
        self._done.set_result(not interrupted)
        return True

    def fail(self, error: BaseException) -> bool:
        if self._done.done():
            return False
        self._done.set_exception(error)
        return True

    async def wait(self) -> bool:
        """Wait for completion. Returns True if played to the end."""
        return await asyncio.shield(self._done)


class AudioCaptureResource(ABC):
    """Acquires the microphone and produces a finite recording."""

    def __init__(self, claim: DeviceClaim = MICROPHONE):
        self._claim = claim
        self._handle: Optional[CaptureHandle] = None

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    async def acquire(self) -> CaptureHandle:
        """
        Start recording.

        Returns:
            The handle of the new recording

        Raises:
            ResourceUnavailable: permission denied or microphone already held
        """
        if self._handle is not None:
            raise ResourceUnavailable("A recording is already in progress")
        self._claim.claim(self)
        try:
            handle = await self._open()
        except ResourceUnavailable:
            self._claim.release(self)
            raise
        except Exception as e:
            self._claim.release(self)
            raise ResourceUnavailable(f"Could not open the microphone: {e}") from e
        self._handle = handle
        logger.info("Microphone acquired")
        return handle

    async def stop(self, handle: CaptureHandle) -> RecordedAudio:
        """Stop recording and return the captured audio."""
        self._check_handle(handle)
        handle.stopped = True
        try:
            return await self._finish(handle)
        finally:
            self._release()

    async def discard(self, handle: CaptureHandle):
        """Stop recording and throw the partial capture away."""
        if handle.stopped:
            return
        self._check_handle(handle)
        handle.stopped = True
        try:
            await self._abort(handle)
        finally:
            self._release()

    def _check_handle(self, handle: CaptureHandle):
        if handle.stopped:
            raise InvalidState("Recording was already stopped")
        if handle is not self._handle:
            raise InvalidState("Recording handle does not belong to this resource")

    def _release(self):
        self._handle = None
        self._claim.release(self)
        logger.info("Microphone released")

    @abstractmethod
    async def _open(self) -> CaptureHandle:
        """Open the input device and begin recording."""

    @abstractmethod
    async def _finish(self, handle: CaptureHandle) -> RecordedAudio:
        """Close the input device and encode what was recorded."""

    @abstractmethod
    async def _abort(self, handle: CaptureHandle):
        """Close the input device, dropping what was recorded."""


class AudioPlaybackResource(ABC):
    """Acquires the speaker and plays finite audio to completion."""

    def __init__(self, claim: DeviceClaim = SPEAKER):
        self._claim = claim
        self._held = False
        self._active: Optional[PlaybackHandle] = None

    @property
    def is_open(self) -> bool:
        return self._held

    async def acquire(self):
        if self._held:
            raise ResourceUnavailable("The speaker is already acquired")
        self._claim.claim(self)
        self._held = True
        logger.info("Speaker acquired")

    async def play(self, audio: bytes) -> PlaybackHandle:
        """
        Start playing encoded audio.

        Args:
            audio: Encoded audio bytes (any format the backend produces)

        Returns:
            Handle signaled once playback completes
        """
        if not self._held:
            raise InvalidState("The speaker must be acquired before playing")
        if self._active is not None and not self._active.done:
            raise ResourceUnavailable("Playback already in progress")
        try:
            self._active = await self._start(audio)
        except (InvalidState, ResourceUnavailable):
            raise
        except Exception as e:
            raise ResourceUnavailable(f"Could not start playback: {e}") from e
        return self._active

    async def stop(self):
        """Tear down an in-progress playback."""
        handle = self._active
        if handle is None or handle.done:
            return
        try:
            await self._interrupt(handle)
        finally:
            handle.complete(interrupted=True)

    async def release(self):
        if not self._held:
            return
        try:
            await self.stop()
        finally:
            self._active = None
            self._held = False
            self._claim.release(self)
            logger.info("Speaker released")

    @abstractmethod
    async def _start(self, audio: bytes) -> PlaybackHandle:
        """Begin playback and return a handle completed at its end."""

    @abstractmethod
    async def _interrupt(self, handle: PlaybackHandle):
        """Stop the output device for a playback that is still running."""
