"""Long-running and one-shot workers for the settlement pipeline."""

from .settlement_pipeline import SettlementPipelineWorker, run_scheduled_stage

__all__ = ["SettlementPipelineWorker", "run_scheduled_stage"]
