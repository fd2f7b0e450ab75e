"""Observability store for settlement scheduler dispatches."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class StageJobSnapshot:
    """Serializable snapshot of a scheduled settlement job."""

    job_id: str
    task: str
    totals: Dict[str, int]
    total_runtime_seconds: float
    last_started_at: datetime | None
    last_completed_at: datetime | None
    last_success_at: datetime | None
    last_error_at: datetime | None
    last_error: str | None
    last_summary: Dict[str, object] | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": self.totals,
            "total_runtime_seconds": self.total_runtime_seconds,
            "last_started_at": _iso(self.last_started_at),
            "last_completed_at": _iso(self.last_completed_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_summary": self.last_summary,
        }


@dataclass
class SchedulerSnapshot:
    """Snapshot across all settlement scheduler jobs."""

    totals: Dict[str, int]
    jobs: Dict[str, StageJobSnapshot]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "jobs": {job_id: snapshot.as_dict() for job_id, snapshot in self.jobs.items()},
        }


@dataclass
class StageJobState:
    job_id: str
    task: str
    total_runs: int = 0
    total_success: int = 0
    total_failures: int = 0
    total_runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_completed_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_summary: Dict[str, object] | None = None
    consecutive_failures: int = 0

    def snapshot(self) -> StageJobSnapshot:
        return StageJobSnapshot(
            job_id=self.job_id,
            task=self.task,
            totals={
                "runs": self.total_runs,
                "success": self.total_success,
                "failures": self.total_failures,
                "consecutive_failures": self.consecutive_failures,
            },
            total_runtime_seconds=self.total_runtime_seconds,
            last_started_at=self.last_started_at,
            last_completed_at=self.last_completed_at,
            last_success_at=self.last_success_at,
            last_error_at=self.last_error_at,
            last_error=self.last_error,
            last_summary=self.last_summary,
        )


class SettlementSchedulerObservabilityStore:
    """Tracks settlement scheduler dispatch outcomes in memory."""

    def __init__(self) -> None:
        self._lock: Lock = Lock()
        self._jobs: Dict[str, StageJobState] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _get_state(self, job_id: str, task: str) -> StageJobState:
        state = self._jobs.get(job_id)
        if state is None:
            state = StageJobState(job_id=job_id, task=task)
            self._jobs[job_id] = state
        else:
            state.task = task
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._get_state(job_id, task)
            state.total_runs += 1
            state.last_started_at = _utcnow()
            state.last_completed_at = None

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        summary: Dict[str, object] | None = None,
    ) -> None:
        with self._lock:
            state = self._get_state(job_id, task)
            state.total_success += 1
            state.total_runtime_seconds += runtime_seconds
            state.last_completed_at = _utcnow()
            state.last_success_at = state.last_completed_at
            state.last_summary = summary
            state.consecutive_failures = 0
            state.last_error = None
            state.last_error_at = None

    def record_failure(self, job_id: str, task: str, *, runtime_seconds: float, error: str) -> None:
        with self._lock:
            state = self._get_state(job_id, task)
            state.total_failures += 1
            state.total_runtime_seconds += runtime_seconds
            state.last_completed_at = _utcnow()
            state.last_error = error
            state.last_error_at = state.last_completed_at
            state.consecutive_failures += 1

    def consecutive_failures(self, job_id: str) -> int:
        with self._lock:
            state = self._jobs.get(job_id)
            return state.consecutive_failures if state else 0

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: state.snapshot() for job_id, state in self._jobs.items()}
            totals = {
                "runs": sum(state.total_runs for state in self._jobs.values()),
                "success": sum(state.total_success for state in self._jobs.values()),
                "failures": sum(state.total_failures for state in self._jobs.values()),
            }
        return SchedulerSnapshot(totals=totals, jobs=jobs)


_SCHEDULER_STORE = SettlementSchedulerObservabilityStore()


def get_settlement_scheduler_store() -> SettlementSchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = [
    "SchedulerSnapshot",
    "SettlementSchedulerObservabilityStore",
    "get_settlement_scheduler_store",
]
