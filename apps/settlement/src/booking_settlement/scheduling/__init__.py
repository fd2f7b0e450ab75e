"""Cron scheduling for the settlement stages."""

from .config import JobDefinition, ScheduleConfig, load_job_definitions
from .runner import SettlementJobScheduler

__all__ = ["JobDefinition", "ScheduleConfig", "SettlementJobScheduler", "load_job_definitions"]
