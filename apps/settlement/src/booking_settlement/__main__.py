"""Run the settlement scheduler until interrupted."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

from loguru import logger

from . import __version__
from .core.logging import configure_logging
from .core.settings import settings
from .observability.tracing import configure_tracing
from .scheduling import SettlementJobScheduler

SERVICE_NAME = "booking-settlement"


def _schedule_path() -> Path:
    schedule_path = Path(settings.settlement_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


async def _serve() -> None:
    if not settings.settlement_scheduler_enabled:
        logger.warning("Settlement scheduler disabled", reason="settlement_scheduler_enabled is false")
        return

    from .db.session import async_session, engine

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    scheduler = SettlementJobScheduler(session_factory=async_session, config_path=_schedule_path())
    try:
        scheduler.start()
        await stop_event.wait()
        logger.info("Settlement scheduler shutting down", **scheduler.health())
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        if scheduler.is_running:
            await scheduler.stop()
        await engine.dispose()


def main() -> None:
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=__version__,
        log_dir=settings.log_dir,
    )
    configure_tracing(service_name=SERVICE_NAME, service_version=__version__, environment=settings.environment)
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
