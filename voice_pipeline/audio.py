import asyncio
import io
import logging
import os
import tempfile
from typing import List, Optional

import numpy as np
import sounddevice as sd
import soundfile as sf

from .models import RecordedAudio
from .resources import (MICROPHONE, SPEAKER, AudioCaptureResource,
                        AudioPlaybackResource, CaptureHandle, DeviceClaim,
                        PlaybackHandle)
from .vad import VoiceActivityDetector

logger = logging.getLogger("audio")


def _log_selected_device(device: Optional[int], kind: str):
    """Log the device a stream of the given kind ('input' or 'output') will open."""
    try:
        info = sd.query_devices(device, kind)
        logger.info(f"Using {kind} device: {info['name']}")
    except Exception as e:
        logger.error(f"Error querying {kind} device {device}: {e}")


class StreamCaptureHandle(CaptureHandle):
    """Recording backed by a sounddevice input stream."""

    def __init__(self):
        super().__init__()
        self.stream: Optional[sd.InputStream] = None
        self.chunks: List[np.ndarray] = []


class SoundDeviceCapture(AudioCaptureResource):
    """Microphone capture through sounddevice, encoded as 16-bit WAV."""

    def __init__(self, input_device: Optional[int] = None,
                 sample_rate: int = 16000,
                 channels: int = 1,
                 chunk_size: int = 512,
                 vad: Optional[VoiceActivityDetector] = None,
                 recordings_dir: Optional[str] = None,
                 claim: DeviceClaim = MICROPHONE):
        """
        Initialize the capture resource.

        Args:
            input_device: Input device ID (None for default)
            sample_rate: Sample rate for recording
            channels: Number of input channels
            chunk_size: Frames per callback block
            vad: Optional detector used to signal the end of speech
            recordings_dir: Directory for recorded files (None for the
                system temp directory)
            claim: Device claim guarding the microphone
        """
        super().__init__(claim)
        self.input_device = input_device
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size
        self.vad = vad
        self.recordings_dir = recordings_dir
        _log_selected_device(input_device, "input")

    async def _open(self) -> CaptureHandle:
        loop = asyncio.get_running_loop()
        handle = StreamCaptureHandle()
        if self.vad is not None:
            self.vad.reset()

        def callback(indata, frames, time, status):
            if status:
                logger.warning(f"Audio callback status: {status}")

            data = indata.copy()
            handle.chunks.append(data)

            if self.vad is not None and not handle.speech_ended:
                if self.vad.process(data, frames / self.sample_rate):
                    loop.call_soon_threadsafe(handle.mark_speech_ended)

        stream = sd.InputStream(
            samplerate=self.sample_rate,
            blocksize=self.chunk_size,
            device=self.input_device,
            channels=self.channels,
            dtype='int16',
            callback=callback
        )
        stream.start()
        handle.stream = stream
        logger.debug("Audio input stream started")
        return handle

    async def _finish(self, handle: StreamCaptureHandle) -> RecordedAudio:
        self._close_stream(handle)

        if handle.chunks:
            samples = np.concatenate(handle.chunks)
        else:
            samples = np.zeros((0, self.channels), dtype=np.int16)
        handle.chunks = []

        buffer = io.BytesIO()
        sf.write(buffer, samples, self.sample_rate, format='WAV', subtype='PCM_16')
        data = buffer.getvalue()

        fd, path = tempfile.mkstemp(prefix="voice_", suffix=".wav", dir=self.recordings_dir)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)

        duration = len(samples) / float(self.sample_rate)
        logger.info(f"Recorded {duration:.2f}s of audio to {path}")
        return RecordedAudio(
            data=data,
            path=path,
            sample_rate=self.sample_rate,
            duration=duration
        )

    async def _abort(self, handle: StreamCaptureHandle):
        self._close_stream(handle)
        handle.chunks = []
        logger.info("Recording discarded")

    def _close_stream(self, handle: StreamCaptureHandle):
        if handle.stream is None:
            return
        try:
            handle.stream.stop()
        finally:
            handle.stream.close()
            handle.stream = None


class SoundDevicePlayback(AudioPlaybackResource):
    """Speaker playback through sounddevice.

    Audio is decoded with soundfile, so anything libsndfile reads (WAV,
    FLAC, OGG, MP3) can be played.
    """

    def __init__(self, output_device: Optional[int] = None,
                 claim: DeviceClaim = SPEAKER):
        super().__init__(claim)
        self.output_device = output_device
        self._stream: Optional[sd.OutputStream] = None
        _log_selected_device(output_device, "output")

    async def _start(self, audio: bytes) -> PlaybackHandle:
        data, sample_rate = sf.read(io.BytesIO(audio), dtype='float32', always_2d=True)
        if data.size == 0:
            raise ValueError("Empty audio data, nothing to play")

        loop = asyncio.get_running_loop()
        handle = PlaybackHandle()
        position = 0

        def callback(outdata, frames, time, status):
            nonlocal position
            if status:
                logger.warning(f"Audio output status: {status}")

            chunk = data[position:position + frames]
            outdata[:len(chunk)] = chunk
            if len(chunk) < frames:
                outdata[len(chunk):] = 0
                raise sd.CallbackStop()
            position += frames

        def finished():
            loop.call_soon_threadsafe(self._on_finished, handle)

        self._stream = sd.OutputStream(
            samplerate=sample_rate,
            device=self.output_device,
            channels=data.shape[1],
            dtype='float32',
            callback=callback,
            finished_callback=finished
        )
        self._stream.start()
        logger.info(f"Playing {len(data) / float(sample_rate):.2f}s of audio")
        return handle

    def _on_finished(self, handle: PlaybackHandle):
        # An interrupted handle has already closed its stream
        if handle.done:
            return
        self._close_stream()
        handle.complete()
        logger.debug("Playback finished")

    async def _interrupt(self, handle: PlaybackHandle):
        if self._stream is not None:
            self._stream.abort()
        self._close_stream()
        logger.info("Playback stopped")

    def _close_stream(self):
        if self._stream is not None:
            self._stream.close()
            self._stream = None
