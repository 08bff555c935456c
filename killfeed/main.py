"""killfeed: Star Citizen kill-feed relay, entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from killfeed.audit import AuditLog
from killfeed.config import (
    CONFIG_FILE,
    AppConfig,
    SettingsStore,
    ensure_client_id,
    resolve_log_path,
)
from killfeed.pipeline import KillFeedPipeline, PipelineConfig
from killfeed.stream import Credential

# File logging from the start; a console handler is added by _setup_console()
_LOG_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
logging.basicConfig(
    level=logging.INFO,
    format=_LOG_FMT,
    handlers=[
        logging.FileHandler("killfeed.log", encoding="utf-8", mode="w"),
    ],
)
logger = logging.getLogger(__name__)


def _setup_console(debug: bool) -> None:
    """Mirror log output to stderr; DEBUG everywhere when *debug* is set."""
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter(_LOG_FMT))
    root = logging.getLogger()
    root.addHandler(console_handler)
    if debug:
        root.setLevel(logging.DEBUG)
        for h in root.handlers:
            h.setLevel(logging.DEBUG)


def _build_pipeline_config(config: AppConfig) -> PipelineConfig:
    """Convert AppConfig to PipelineConfig."""
    return PipelineConfig(
        log_path=resolve_log_path(config),
        db_path=config.db_path,
        csv_path=config.csv_path or None,
        server_url=config.server_url or None,
        client_id=config.client_id,
        correlation_window=config.correlation_window,
        enrichment_timeout=config.enrichment_timeout,
        fetch_profiles=config.fetch_profiles,
        max_events=config.max_events,
        poll_interval=config.poll_interval,
    )


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="killfeed",
        description="Watch the Star Citizen Game.log and relay kill events.",
    )
    parser.add_argument("--log-path", help="Path to Game.log (default: detected)")
    parser.add_argument("--server-url", help="WebSocket URL of the kill-feed service")
    parser.add_argument("--config", default=CONFIG_FILE, help="Config file (default: %(default)s)")
    parser.add_argument("--no-profiles", action="store_true", help="Skip RSI profile lookups")
    parser.add_argument("--debug", action="store_true", help="Verbose console logging")
    return parser.parse_args(argv)


async def _run(config: AppConfig, settings: SettingsStore) -> None:
    async def credentials() -> Credential | None:
        if config.access_token:
            return Credential(token=config.access_token, kind="user")
        if config.guest_token:
            return Credential(token=config.guest_token, kind="guest")
        return None

    def save_guest_token(token: str) -> None:
        config.guest_token = token
        settings.set("guest_token", token)

    pipeline = KillFeedPipeline(
        _build_pipeline_config(config),
        credentials=credentials,
        on_event=lambda event: logger.info("%s", event.description),
        on_status=lambda message: logger.warning("%s", message),
        on_guest_token=save_guest_token,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.stop)
        except NotImplementedError:
            # Windows: Ctrl+C arrives as KeyboardInterrupt instead
            pass

    try:
        await pipeline.run()
    except asyncio.CancelledError:
        logger.info("Interrupted")
        raise


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)

    # Only what is in the file gets saved back; env and CLI overrides stay in memory
    settings = SettingsStore(AppConfig.load(args.config), args.config)
    ensure_client_id(settings.config, args.config)

    config = AppConfig.load(args.config).apply_env()
    if args.log_path:
        config.log_path = args.log_path
    if args.server_url:
        config.server_url = args.server_url
    if args.no_profiles:
        config.fetch_profiles = False

    _setup_console(debug=args.debug or config.show_debug_console)

    logger.info("Client id: %s", config.client_id)

    if config.csv_path:
        AuditLog(config.csv_path).monthly_tally()

    try:
        asyncio.run(_run(config, settings))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
