import logging

import numpy as np

logger = logging.getLogger("vad")

SILENCE_FLOOR_DB = -160.0


def level_db(chunk: np.ndarray) -> float:
    """
    Compute the RMS level of an audio chunk in dBFS.

    Args:
        chunk: int16 samples or float samples in [-1, 1]

    Returns:
        Level in dBFS, clamped at -160 for digital silence
    """
    if chunk.size == 0:
        return SILENCE_FLOOR_DB
    samples = chunk.astype(np.float32)
    if chunk.dtype == np.int16:
        samples = samples / 32768.0
    rms = float(np.sqrt(np.mean(samples ** 2)))
    if rms <= 0.0:
        return SILENCE_FLOOR_DB
    return max(SILENCE_FLOOR_DB, 20.0 * np.log10(rms))


class VoiceActivityDetector:
    """Detects the end of an utterance from audio levels.

    Speech starts once the level rises above ``speech_threshold_db``. After
    speech, a level below ``silence_threshold_db`` held for
    ``silence_secs`` ends the utterance. Levels between the two thresholds
    keep the current state, which stops the detector flapping on noise.
    """

    def __init__(self, speech_threshold_db: float = -40.0,
                 silence_threshold_db: float = -50.0,
                 silence_secs: float = 0.6):
        if silence_threshold_db > speech_threshold_db:
            raise ValueError("silence threshold must not exceed speech threshold")
        self.speech_threshold_db = speech_threshold_db
        self.silence_threshold_db = silence_threshold_db
        self.silence_secs = silence_secs
        self.reset()

    def reset(self):
        self.is_speaking = False
        self.heard_speech = False
        self.ended = False
        self._silence_elapsed = 0.0

    def process(self, chunk: np.ndarray, duration: float) -> bool:
        """
        Feed one chunk of audio.

        Args:
            chunk: Audio samples
            duration: Length of the chunk in seconds

        Returns:
            True once the end of the utterance has been detected
        """
        if self.ended:
            return True

        level = level_db(chunk)
        if level > self.speech_threshold_db:
            if not self.is_speaking:
                logger.debug(f"Speech detected (level {level:.1f} dB)")
            self.is_speaking = True
            self.heard_speech = True
            self._silence_elapsed = 0.0
            return False

        # Time since the last loud chunk, including the in-between band
        if self.is_speaking:
            self._silence_elapsed += duration
            if level < self.silence_threshold_db and self._silence_elapsed >= self.silence_secs:
                logger.debug(f"Silence for {self._silence_elapsed:.2f}s, utterance ended")
                self.is_speaking = False
                self.ended = True
        return self.ended
