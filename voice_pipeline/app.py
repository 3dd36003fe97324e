import logging
from typing import Any, Mapping, Optional

from .audio import SoundDeviceCapture, SoundDevicePlayback
from .backend import VoiceBackendClient
from .config import PipelineConfig
from .dispatch import CommandCallback, HomeAssistantDispatcher
from .pipeline import VoicePipeline
from .vad import VoiceActivityDetector

logger = logging.getLogger("app")


def create_pipeline(config: PipelineConfig,
                    context: Optional[Mapping[str, Any]] = None,
                    on_command: Optional[CommandCallback] = None) -> VoicePipeline:
    """
    Wire a VoicePipeline to the real microphone, speaker and backend.

    Commands go to ``on_command`` when given, otherwise to Home Assistant
    when it is configured.
    """
    vad = VoiceActivityDetector(
        speech_threshold_db=config.conversation.speech_threshold_db,
        silence_threshold_db=config.conversation.silence_threshold_db,
        silence_secs=config.conversation.silence_secs
    )
    capture = SoundDeviceCapture(
        input_device=config.audio.input_device,
        sample_rate=config.audio.sample_rate,
        channels=config.audio.channels,
        chunk_size=config.audio.chunk_size,
        vad=vad,
        recordings_dir=config.audio.recordings_dir
    )
    playback = SoundDevicePlayback(output_device=config.audio.output_device)

    backend = VoiceBackendClient(
        base_url=config.backend.url,
        api_key=config.backend.api_key,
        timeout=config.backend.timeout,
        language=config.backend.language,
        voice=config.backend.voice,
        transcribe_path=config.backend.transcribe_path,
        interpret_path=config.backend.interpret_path,
        synthesize_path=config.backend.synthesize_path
    )

    dispatcher = None
    if on_command is None and config.home_assistant.enabled:
        dispatcher = HomeAssistantDispatcher(
            ha_url=config.home_assistant.url,
            ha_token=config.home_assistant.token,
            verify_ssl=config.home_assistant.verify_ssl,
            timeout=config.home_assistant.timeout
        )
    elif on_command is None:
        logger.warning("Home Assistant is not configured, commands will not be executed")

    pipeline = VoicePipeline(
        capture=capture,
        playback=playback,
        speech=backend,
        reasoning=backend,
        dispatcher=dispatcher,
        on_command=on_command,
        context=context,
        max_history=config.history.max_turns,
        stage_timeout=config.backend.timeout
    )
    logger.info("Voice pipeline initialized")
    return pipeline
