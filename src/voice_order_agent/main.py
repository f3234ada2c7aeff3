"""
Main entry point for the Voice Order Agent application.
"""

import argparse
import asyncio
import logging
import os
import sys
import threading

from voice_order_agent.agents.order_parser import OrderParser
from voice_order_agent.config import Settings, get_settings
from voice_order_agent.errors import StoreError, VoiceOrderError
from voice_order_agent.models.llm_client import LLMClient
from voice_order_agent.order import (
    CatalogEntry,
    ConfirmationPulseScheduler,
    Language,
    OrderQuantityReconciler,
    OrderState,
)
from voice_order_agent.services.store_client import StoreClient
from voice_order_agent.voice.capture import AudioCaptureChannel, CaptureConfig
from voice_order_agent.voice.playback import AudioPlaybackChannel, PlaybackConfig
from voice_order_agent.voice.transport import GeminiLiveTransport
from voice_order_agent.voice.voice_session import SessionOutcome, VoiceSessionConfig, VoiceSessionController


def resolve_log_level(settings: Settings) -> int:
    """Debug mode forces DEBUG regardless of the configured level."""
    if settings.debug:
        return logging.DEBUG
    return getattr(logging, settings.log_level)


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=resolve_log_level(get_settings()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    p = argparse.ArgumentParser(prog="voice-order", description="Place today's vegetable order by voice")
    p.add_argument(
        "--user-id",
        default=os.getenv("VOICE_ORDER_USER_ID"),
        help="User identifier (phone number) the order is placed for (default: VOICE_ORDER_USER_ID)",
    )
    p.add_argument(
        "--language",
        default=os.getenv("VOICE_ORDER_LANGUAGE", Language.EN.value),
        choices=[lang.value for lang in Language],
        help="Language used to print the order summary (default: VOICE_ORDER_LANGUAGE or EN)",
    )
    p.add_argument(
        "--no-submit",
        action="store_true",
        help="Print the reconciled order without submitting it",
    )
    p.add_argument("--sample-rate", type=int, default=settings.capture_sample_rate)
    p.add_argument("--block-size", type=int, default=settings.capture_block_size)
    return p


def _wait_for_enter(loop: asyncio.AbstractEventLoop) -> asyncio.Future:
    """Resolve a future when Enter is pressed.

    A daemon thread is used so a session ended by the server does not leave
    the interpreter waiting on stdin at shutdown.
    """
    future: asyncio.Future = loop.create_future()

    def _read() -> None:
        try:
            sys.stdin.readline()
        finally:
            loop.call_soon_threadsafe(lambda: future.done() or future.set_result(None))

    threading.Thread(target=_read, name="voice-stop-key", daemon=True).start()
    return future


def format_order(order: OrderState, catalog: list[CatalogEntry], language: Language) -> str:
    names = {entry.catalog_id: entry.names.get(language) or entry.names.get(Language.EN, "") for entry in catalog}
    lines = [f"  - {names.get(item.catalog_id, f'#{item.catalog_id}')}: {item.quantity.value}" for item in order.items]
    return "\n".join(lines) if lines else "  (empty)"


async def run_voice_order(argv: list[str] | None = None) -> int:
    """
    Run one voice-ordering session and submit the result.

    Returns:
        Process exit code.
    """
    settings = get_settings()
    logger = logging.getLogger(__name__)
    args = build_parser().parse_args(argv)

    if not args.user_id and not args.no_submit:
        print("A --user-id (or VOICE_ORDER_USER_ID) is required unless --no-submit is set.")
        return 2

    store = StoreClient()
    order = OrderState()
    reconciler = OrderQuantityReconciler(
        order,
        ConfirmationPulseScheduler(window_s=settings.pulse_window_ms / 1000.0),
    )
    controller = VoiceSessionController(
        transport=GeminiLiveTransport(),
        capture=AudioCaptureChannel(CaptureConfig(sample_rate=args.sample_rate, block_size=args.block_size)),
        playback=AudioPlaybackChannel(
            PlaybackConfig(sample_rate=settings.playback_sample_rate, channels=settings.playback_channels)
        ),
        parser=OrderParser(LLMClient(timeout=settings.parser_timeout)),
        reconciler=reconciler,
        store=store,
        config=VoiceSessionConfig(
            backpressure_frames=settings.capture_backpressure_frames,
            parse_timeout_s=settings.parser_timeout + 5.0,
        ),
    )

    try:
        if args.user_id:
            # Ordering by voice implies the user wants delivery today.
            await store.send_delivery_confirmation(args.user_id, "YES")

        async with controller:
            try:
                await controller.start()
            except VoiceOrderError as e:
                logger.warning(f"Voice session could not start: {e}")
                print(f"\n[Voice] Could not complete voice order: {e}\n")
                return 1

            print("\n[Voice] Listening... speak your order, press Enter to stop.\n", flush=True)
            stop_key = _wait_for_enter(asyncio.get_running_loop())
            closed = asyncio.ensure_future(controller.wait_closed())
            done, _ = await asyncio.wait({stop_key, closed}, return_when=asyncio.FIRST_COMPLETED)
            if closed not in done:
                await controller.user_stop()
            outcome: SessionOutcome | None = await closed

        if outcome is not None and outcome.failed:
            print(f"\n[Voice] Could not complete voice order: {outcome.session.failure}\n")
        if outcome is not None and outcome.transcript:
            print(f'\n[You] "{outcome.transcript}"\n')

        print("[Order]")
        print(format_order(order, controller.catalog, Language(args.language)))

        if args.no_submit or len(order) == 0:
            return 0

        try:
            await store.submit_order(args.user_id, order.items)
        except StoreError as e:
            print(f"\n[Order] Submission failed: {e}\n")
            return 1
        print("\n[Order] Submitted.\n")
        return 0
    finally:
        await store.close()


def main() -> None:
    """Main entry point for the application."""
    setup_logging()

    try:
        sys.exit(asyncio.run(run_voice_order(sys.argv[1:])))
    except KeyboardInterrupt:
        print("\nVoice ordering terminated by user.")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
