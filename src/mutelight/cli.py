"""Command line entry point: run MuteLight until interrupted."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from .app import MuteLightApp
from .config import ConfigManager
from .events import StateChanged

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mutelight",
        description="Sync Discord voice state to WLED lights",
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="Config file, YAML or JSON (default: $MUTELIGHT_CONFIG or ./mutelight.yaml)")
    parser.add_argument("--poll-interval-ms", type=int, default=None,
                        help="Voice state poll interval in ms (100-5000)")
    parser.add_argument("--log-level", default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level (default: from config, INFO)")
    parser.add_argument("--no-capture", action="store_true",
                        help="Do not capture device states on start")
    parser.add_argument("--no-restore", action="store_true",
                        help="Do not restore captured device states on exit")
    return parser


async def _log_notifications(app: MuteLightApp) -> None:
    async for event in app.notifications.subscribe():
        if isinstance(event, StateChanged):
            logger.info("State: %s", event.state.value)
        else:
            logger.debug("Notification: %s", event.to_dict())


async def run(app: MuteLightApp, capture: bool = True, restore: bool = True) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    notifier = asyncio.create_task(_log_notifications(app))
    outcome = await app.start(capture_devices=capture)
    if not outcome.ok:
        logger.warning("Not connected yet (%s); retrying in the background", outcome.message)

    await stop.wait()
    logger.info("Shutting down...")
    result = await app.stop(restore=restore)
    app.notifications.close()
    await notifier
    if not result.ok:
        logger.warning("%s", result.message)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = ConfigManager(args.config)
    settings = config.get_settings()

    logging.basicConfig(
        level=getattr(logging, (args.log_level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )

    if args.poll_interval_ms is not None:
        outcome = config.update_settings(polling_interval_ms=args.poll_interval_ms)
        if not outcome.ok:
            print(f"mutelight: {outcome.message}", file=sys.stderr)
            return 2

    if not config.get_discord().client_id:
        print("mutelight: no Discord client id (set DISCORD_CLIENT_ID or discord.client_id)", file=sys.stderr)
        return 2

    app = MuteLightApp(config)
    restore = settings.restore_on_exit and not args.no_restore
    try:
        return asyncio.run(run(app, capture=not args.no_capture, restore=restore))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
