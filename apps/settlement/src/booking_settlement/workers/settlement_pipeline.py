"""Worker that runs settlement stages and records each invocation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable
from uuid import UUID

from loguru import logger

from booking_settlement.core.settings import get_settings
from booking_settlement.jobs.booking_resolver import resolve_bookings
from booking_settlement.jobs.common import SessionFactory, open_session
from booking_settlement.jobs.refund_processor import process_refunds
from booking_settlement.jobs.settlement_processor import process_settlements
from booking_settlement.jobs.withdrawal_sweeper import sweep_wallet_withdrawals
from booking_settlement.models.settlement_run import SettlementRun, SettlementRunStatusEnum
from booking_settlement.observability.tracing import get_tracer
from booking_settlement.services.bookings import SettlementStage
from booking_settlement.services.payments import PaymentProvider, StripePaymentProvider

ProviderFactory = Callable[[], PaymentProvider]


@dataclass(frozen=True, slots=True)
class StageSpec:
    stage: SettlementStage
    func: Callable[..., Awaitable[Dict[str, int]]]
    needs_provider: bool


PIPELINE: tuple[StageSpec, ...] = (
    StageSpec(SettlementStage.BOOKING_RESOLVER, resolve_bookings, needs_provider=False),
    StageSpec(SettlementStage.SETTLEMENT_PROCESSOR, process_settlements, needs_provider=True),
    StageSpec(SettlementStage.REFUND_PROCESSOR, process_refunds, needs_provider=True),
    StageSpec(SettlementStage.WITHDRAWAL_SWEEPER, sweep_wallet_withdrawals, needs_provider=True),
)
_BY_STAGE = {spec.stage: spec for spec in PIPELINE}


class SettlementPipelineWorker:
    """Runs settlement stages one at a time and audits them as ``SettlementRun`` rows."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        provider_factory: ProviderFactory | None = None,
        stage_gap_seconds: float | None = None,
        trigger_label: str | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._provider_factory = provider_factory or StripePaymentProvider.from_settings
        self._provider: PaymentProvider | None = None
        self._stage_gap_seconds = (
            settings.pipeline_stage_gap_seconds if stage_gap_seconds is None else stage_gap_seconds
        )
        self._trigger_label = trigger_label or settings.pipeline_trigger_label

    def _get_provider(self) -> PaymentProvider:
        if self._provider is None:
            self._provider = self._provider_factory()
        return self._provider

    async def _start_run(self, stage: SettlementStage, triggered_by: str) -> UUID:
        async with await open_session(self._session_factory) as session:
            run = SettlementRun(stage=stage.value, triggered_by=triggered_by, status=SettlementRunStatusEnum.RUNNING)
            session.add(run)
            await session.commit()
            return run.id

    async def _finish_run(
        self,
        run_id: UUID,
        *,
        status: SettlementRunStatusEnum,
        summary: Dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        async with await open_session(self._session_factory) as session:
            run = await session.get(SettlementRun, run_id)
            if run is None:
                return
            run.status = status
            run.summary_json = summary
            run.error_message = error
            run.completed_at = datetime.now(timezone.utc)
            await session.commit()

    async def run_stage(self, stage: SettlementStage | str, *, triggered_by: str | None = None) -> Dict[str, int]:
        """Execute one stage and persist its outcome; stage failures are re-raised."""

        spec = _BY_STAGE[SettlementStage(stage)]
        label = triggered_by or self._trigger_label
        run_id = await self._start_run(spec.stage, label)
        kwargs: Dict[str, Any] = {"session_factory": self._session_factory}

        with get_tracer().start_as_current_span(f"settlement.{spec.stage.value}") as span:
            span.set_attribute("settlement.stage", spec.stage.value)
            span.set_attribute("settlement.triggered_by", label)
            try:
                if spec.needs_provider:
                    kwargs["provider"] = self._get_provider()
                summary = await spec.func(**kwargs)
            except Exception as exc:
                span.record_exception(exc)
                await self._finish_run(run_id, status=SettlementRunStatusEnum.FAILED, error=str(exc))
                logger.exception("Settlement stage failed", stage=spec.stage.value, run_id=str(run_id))
                raise

        await self._finish_run(run_id, status=SettlementRunStatusEnum.COMPLETED, summary=dict(summary))
        logger.info("Settlement stage completed", stage=spec.stage.value, run_id=str(run_id), **summary)
        return summary

    async def run_pipeline(
        self,
        *,
        stages: Iterable[SettlementStage | str] | None = None,
        triggered_by: str | None = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Run stages in pipeline order, continuing past a failed stage."""

        selected = [SettlementStage(stage) for stage in stages] if stages is not None else None
        ordered = [spec.stage for spec in PIPELINE if selected is None or spec.stage in selected]
        results: Dict[str, Dict[str, Any]] = {}
        for index, stage in enumerate(ordered):
            if index and self._stage_gap_seconds:
                await asyncio.sleep(self._stage_gap_seconds)
            try:
                results[stage.value] = dict(await self.run_stage(stage, triggered_by=triggered_by))
            except Exception as exc:
                results[stage.value] = {"error": str(exc)}
        logger.info("Settlement pipeline finished", stages=list(results))
        return results


async def run_scheduled_stage(
    *,
    session_factory: SessionFactory,
    stage: str,
    triggered_by: str = "scheduler",
) -> Dict[str, int]:
    """Scheduler entrypoint for a single stage."""

    worker = SettlementPipelineWorker(session_factory, trigger_label=triggered_by)
    return await worker.run_stage(stage)


__all__ = ["PIPELINE", "SettlementPipelineWorker", "StageSpec", "run_scheduled_stage"]
