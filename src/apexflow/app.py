"""Headless single-session runner."""

import argparse
import asyncio
import signal
import sys
import threading
from datetime import datetime
from typing import List, Optional

from apexflow import __app_name__, __version__
from apexflow.core.asr import ProviderKind, get_provider_ids, list_local_models, unload_models
from apexflow.core.audio import AudioSource
from apexflow.core.output import StreamOutputSink, TextOutputController
from apexflow.core.pipeline import OutcomeStatus, PipelineController, SessionOutcome
from apexflow.core.settings import (
    Settings,
    TranscriptionRecord,
    add_history_record,
    get_settings,
)
from apexflow.utils.logger import configure_logging, get_logger, shutdown_logging

logger = get_logger(__name__)

EXIT_CODES = {
    OutcomeStatus.DELIVERED: 0,
    OutcomeStatus.FAILED: 1,
    OutcomeStatus.CANCELLED: 130,
}


def record_history(settings: Settings, outcome: SessionOutcome) -> None:
    if outcome.status is not OutcomeStatus.DELIVERED or not outcome.raw_text:
        return

    enhancement = settings.get_active_enhancement() if outcome.enhanced else None
    record = TranscriptionRecord(
        timestamp=datetime.now().isoformat(),
        raw_text=outcome.raw_text,
        enhanced_text=outcome.text if outcome.enhanced else None,
        enhancement_name=enhancement.title if enhancement else None,
        provider_id=outcome.provider_id,
        cost_usd=outcome.cost_usd,
    )
    try:
        add_history_record(record)
    except OSError as e:
        logger.warning(f"Could not write history: {e}")
        return
    logger.debug(f"Recorded transcription to history: {len(outcome.raw_text)} chars")


def _wait_for_enter(loop: asyncio.AbstractEventLoop) -> asyncio.Future:
    future = loop.create_future()

    def read_line():
        sys.stdin.readline()
        loop.call_soon_threadsafe(lambda: future.done() or future.set_result(None))

    # Daemon thread so a cancelled session does not wait for stdin on exit
    threading.Thread(target=read_line, name="stdin-reader", daemon=True).start()
    return future


async def run_session(settings: Settings, controller: PipelineController) -> SessionOutcome:
    loop = asyncio.get_running_loop()
    interrupted = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, interrupted.set)
    except (NotImplementedError, RuntimeError):
        pass  # Windows: Ctrl+C surfaces as KeyboardInterrupt instead

    controller.add_outcome_listener(lambda outcome: record_history(settings, outcome))

    try:
        async with controller:
            session = await controller.start()
            if not session.is_terminal:
                print("Recording... press Enter to stop, Ctrl+C to cancel.", file=sys.stderr)

            enter = _wait_for_enter(loop)
            interrupt = asyncio.ensure_future(interrupted.wait())
            try:
                done, _ = await asyncio.wait(
                    {enter, interrupt, session.outcome}, return_when=asyncio.FIRST_COMPLETED
                )
                if interrupt in done:
                    await controller.cancel()
                elif enter in done:
                    print("Transcribing...", file=sys.stderr)
                    await controller.stop()

                while not session.outcome.done():
                    done, _ = await asyncio.wait(
                        {interrupt, session.outcome}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if interrupt in done:
                        await controller.cancel()
            finally:
                interrupt.cancel()
                enter.cancel()

            return await session.outcome
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    update = {}
    if args.provider:
        update["transcription_provider"] = args.provider
    if args.model:
        update["transcription_model"] = args.model
    if args.fallback:
        update["streaming_fallback"] = "batch"
        update["fallback_transcription_provider"] = args.fallback
    if args.language:
        update["transcription_language"] = args.language
    if args.enhance:
        update["enhancement_enabled"] = True
    if args.mode:
        update["enhancement_mode"] = args.mode
    return settings.model_copy(update=update, deep=True) if update else settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apexflow",
        description="Record one dictation, transcribe it and deliver the text.",
    )
    parser.add_argument("--version", action="version", version=f"{__app_name__} {__version__}")
    parser.add_argument(
        "--print",
        dest="print_only",
        action="store_true",
        help="write the result to stdout instead of pasting it",
    )
    parser.add_argument("--provider", choices=get_provider_ids(), help="transcription provider")
    parser.add_argument("--model", help="transcription model id")
    parser.add_argument(
        "--fallback",
        choices=get_provider_ids(ProviderKind.BATCH),
        help="batch provider to retry with if the streaming connection breaks",
    )
    parser.add_argument("--language", help="spoken language code, e.g. 'en'")
    parser.add_argument("--enhance", action="store_true", help="run LLM enhancement")
    parser.add_argument("--mode", choices=["restrictive", "assistant"], help="enhancement mode")
    parser.add_argument(
        "--list-devices", action="store_true", help="list audio input devices and exit"
    )
    parser.add_argument(
        "--list-models", action="store_true", help="list local sherpa-onnx models and exit"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log at debug level")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        configure_logging(level="DEBUG")

    if args.list_devices:
        for device in AudioSource.list_devices():
            print(f"{device.index}: {device.name} ({device.channels} ch)")
        return 0

    if args.list_models:
        for model in list_local_models():
            status = "downloaded" if model.cached else "not downloaded"
            print(f"{model.id}  {model.name} [{model.type}, {status}]")
        return 0

    settings = _apply_overrides(get_settings(), args)
    logger.info(f"Starting {__app_name__} v{__version__}")
    logger.info(
        f"Settings: provider={settings.transcription_provider}, "
        f"sample_rate={settings.sample_rate}, enhancement={settings.enhancement_enabled}"
    )

    sink = StreamOutputSink() if args.print_only else TextOutputController()
    controller = PipelineController(settings_provider=lambda: settings, output_sink=sink)

    try:
        outcome = asyncio.run(run_session(settings, controller))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_CODES[OutcomeStatus.CANCELLED]
    finally:
        unload_models()
        shutdown_logging()

    if outcome.status is not OutcomeStatus.DELIVERED:
        print(f"{outcome.status.value}: {outcome.reason}", file=sys.stderr)
    return EXIT_CODES[outcome.status]


if __name__ == "__main__":
    sys.exit(main())
