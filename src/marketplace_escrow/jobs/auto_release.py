"""Auto-release sweep as a standalone job.

Releases every ESCROW_HELD payment whose hold period has elapsed. Meant to
be run by cron (or a Kubernetes CronJob) every few hours; running it twice,
or alongside the in-process sweep, is harmless.

Usage:
    # One sweep, then exit (cron):
    uv run marketplace-auto-release --once

    # Loop every 6 hours (default interval):
    uv run marketplace-auto-release

    # Smaller batches, every 10 minutes:
    uv run marketplace-auto-release --interval 600 --batch-size 50
"""

from __future__ import annotations

import argparse
import asyncio
import signal

from marketplace_escrow.config import get_settings
from marketplace_escrow.infrastructure.database.engine import build_engine, build_session_factory
from marketplace_escrow.infrastructure.gateway import build_gateway
from marketplace_escrow.infrastructure.redis_client import close_redis, connect_event_stream
from marketplace_escrow.logging_config import get_logger, setup_logging
from marketplace_escrow.services.auto_release import AutoReleaseScheduler

logger = get_logger("auto_release_job")


async def run(once: bool, interval: float | None, batch_size: int | None) -> int:
    settings = get_settings()
    engine = build_engine(settings.database_url, settings)
    gateway = build_gateway(settings)
    await connect_event_stream(settings)

    if batch_size:
        settings = settings.model_copy(update={"auto_release_batch_size": batch_size})
    scheduler = AutoReleaseScheduler(build_session_factory(engine), gateway, settings)
    try:
        if once:
            report = await scheduler.run_once()
            logger.info("auto_release_job.done", **report.to_dict())
            return 1 if report.failed else 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await scheduler.run_forever(interval_seconds=interval, stop_event=stop_event)
        return 0
    finally:
        aclose = getattr(gateway, "aclose", None)
        if aclose is not None:
            await aclose()
        await close_redis()
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Release escrow whose hold period has elapsed")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between sweeps (default: settings)"
    )
    parser.add_argument(
        "--batch-size", type=int, default=None, help="Payments per sweep (default: settings)"
    )
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)

    raise SystemExit(asyncio.run(run(args.once, args.interval, args.batch_size)))


if __name__ == "__main__":
    main()
