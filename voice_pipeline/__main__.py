import argparse
import asyncio
import json
import logging
import os
import signal
import sys

from .app import create_pipeline
from .config import PipelineConfig, configure_logging
from .errors import ConfigurationError, VoicePipelineError
from .pipeline import VoicePipeline
from .session import ConversationSession

logger = logging.getLogger("voice_pipeline")


async def push_to_talk(pipeline: VoicePipeline):
    """Press Enter to start speaking, Enter again to send, 'q' to quit."""
    loop = asyncio.get_running_loop()

    async def prompt(text: str) -> str:
        return (await loop.run_in_executor(None, input, text)).strip().lower()

    while True:
        if await prompt("[Enter] to talk, [q] to quit: ") == "q":
            return
        try:
            await pipeline.begin()
        except VoicePipelineError as e:
            print(f"Could not start recording: {e}")
            continue

        if await prompt("Listening... [Enter] to send, [c] to cancel: ") == "c":
            await pipeline.cancel()
            continue

        result = await pipeline.end()
        if result.error is not None:
            print(f"Voice command failed: {result.error}")


async def conversation(pipeline: VoicePipeline, config: PipelineConfig):
    session = ConversationSession(
        pipeline,
        config.conversation,
        on_status=lambda status: print(f"[{status.value}]")
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, session.stop)

    results = await session.run()
    logger.info(f"Conversation finished after {len(results)} turn(s)")


async def run(args) -> int:
    try:
        config = PipelineConfig.from_file(args.config)
    except (OSError, ConfigurationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    configure_logging(config.logging)

    try:
        context = json.loads(args.context) if args.context else {}
    except ValueError as e:
        print(f"Invalid --context JSON: {e}", file=sys.stderr)
        return 1
    pipeline = create_pipeline(config, context=context)
    pipeline.add_listener("transcript", lambda text: print(f"You: {text}"))
    pipeline.add_listener("reply", lambda text: print(f"Assistant: {text}"))

    try:
        if args.conversation:
            await conversation(pipeline, config)
        else:
            await push_to_talk(pipeline)
    except Exception as e:
        logger.exception(f"Error in voice pipeline: {e}")
        return 1
    finally:
        await pipeline.close()
    return 0


def main():
    """Entry point for the voice pipeline."""
    parser = argparse.ArgumentParser(description="Home Assistant Voice Pipeline")
    parser.add_argument(
        "--config",
        type=str,
        default=os.environ.get("VOICE_PIPELINE_CONFIG", "config/pipeline.yaml"),
        help="Path to configuration file"
    )
    parser.add_argument(
        "--conversation",
        action="store_true",
        help="Hands-free conversation instead of push-to-talk"
    )
    parser.add_argument(
        "--context",
        type=str,
        default=None,
        help="JSON object describing the current room or device"
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
