"""Run settlement stages once, outside the cron scheduler.

Intended usage: manual catch-up after an outage or an ad-hoc run while
investigating a stuck booking or wallet. Every stage is safe to re-run.

Example:
    python tooling/scripts/run_settlement_stage.py --stage withdrawal_sweeper
    python tooling/scripts/run_settlement_stage.py --stage all --gap-seconds 0
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger

STAGES = ("booking_resolver", "settlement_processor", "refund_processor", "withdrawal_sweeper")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute settlement stages once")
    parser.add_argument(
        "--stage",
        choices=(*STAGES, "all"),
        default="all",
        help="Stage to run, or 'all' to run the full pipeline in order.",
    )
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded on settlement run rows to describe the invocation source.",
    )
    parser.add_argument(
        "--gap-seconds",
        type=float,
        default=None,
        help="Pause between stages when running the full pipeline.",
    )
    return parser.parse_args()


async def _run(stage: str, trigger: str, gap_seconds: float | None) -> dict[str, dict]:
    repo_root = Path(__file__).resolve().parents[2]
    settlement_src = repo_root / "apps" / "settlement" / "src"
    if str(settlement_src) not in sys.path:
        sys.path.insert(0, str(settlement_src))

    from booking_settlement import __version__  # type: ignore import-position
    from booking_settlement.core.logging import configure_logging  # type: ignore import-position
    from booking_settlement.core.settings import settings  # type: ignore import-position
    from booking_settlement.db.session import async_session, engine  # type: ignore import-position
    from booking_settlement.workers import SettlementPipelineWorker  # type: ignore import-position

    configure_logging(
        service_name="booking-settlement",
        environment=settings.environment,
        version=__version__,
        log_dir=settings.log_dir,
    )
    worker = SettlementPipelineWorker(async_session, stage_gap_seconds=gap_seconds, trigger_label=trigger)
    try:
        if stage == "all":
            return await worker.run_pipeline()
        return {stage: dict(await worker.run_stage(stage))}
    finally:
        await engine.dispose()


def main() -> int:
    args = parse_args()
    results = asyncio.run(_run(args.stage, args.trigger, args.gap_seconds))
    failed = [name for name, summary in results.items() if "error" in summary]
    logger.success(
        "Settlement stage run completed",
        stages=list(results),
        failed=failed,
        trigger=args.trigger,
    )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
