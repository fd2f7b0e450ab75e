from __future__ import annotations

import json
import logging
from datetime import timezone
from logging import LogRecord
from pathlib import Path
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_RESERVED_LOG_RECORD_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
}

_ERROR_LEVEL_NO = 40


class InterceptHandler(logging.Handler):
    """Bridge standard logging records (SQLAlchemy, APScheduler, stripe) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = record.msg if isinstance(record.msg, str) else str(record.msg)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS
        }

        bound_logger = logger.bind(**extra) if extra else logger
        bound_logger.opt(depth=6, exception=record.exc_info).log(level, message)


class StageLogSink:
    """Append stage-tagged records to ``<log_dir>/<stage>.log``.

    Each line is ``[<ISO-8601 UTC>] <LEVEL> <message> key=value ...`` with the
    record's structured context appended. Records without a bound ``stage`` are
    ignored, so the sink only ever sees pipeline output.
    """

    def __init__(self, log_dir: Path | str) -> None:
        self._log_dir = Path(log_dir)

    def path_for(self, stage: str) -> Path:
        safe_name = stage.replace("/", "_").replace("\\", "_")
        return self._log_dir / f"{safe_name}.log"

    def __call__(self, message: "logger.Message") -> None:
        record = message.record
        stage = record["extra"].get("stage")
        if not stage:
            return
        timestamp = record["time"].astimezone(timezone.utc).isoformat()
        context = " ".join(
            f"{key}={value}" for key, value in record["extra"].items() if key != "stage"
        )
        line = f"[{timestamp}] {record['level'].name} {record['message']}"
        if context:
            line = f"{line} {context}"
        line += "\n"
        self._log_dir.mkdir(parents=True, exist_ok=True)
        with self.path_for(str(stage)).open("a", encoding="utf-8") as handle:
            handle.write(line)


def is_error_record(record: Dict[str, Any]) -> bool:
    """Severity flag used by the stage log: ERROR and above."""

    return record["level"].no >= _ERROR_LEVEL_NO


def _serialize_log(message: "logger.Message", metadata: Dict[str, Any]) -> None:
    record = message.record
    span = trace.get_current_span()
    span_context = span.get_span_context() if span else None

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "error": is_error_record(record),
        "message": record["message"],
        "logger": record["name"],
        "service": metadata.get("service_name", "unknown"),
        "environment": metadata.get("environment", "unknown"),
        "version": metadata.get("version", "unknown"),
    }

    if span_context and span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["extra"]:
        payload.update(record["extra"])

    if record["exception"] is not None:
        payload["exception"] = str(record["exception"].value)

    print(json.dumps(payload, default=str))


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    log_dir: Path | str | None = None,
) -> None:
    """Configure Loguru + stdlib logging with structured JSON output and stage log files."""

    logger.remove()
    metadata = {"service_name": service_name, "environment": environment, "version": version}
    logger.add(lambda message: _serialize_log(message, metadata), backtrace=False, diagnose=False)
    if log_dir:
        logger.add(StageLogSink(log_dir), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.INFO)


def stage_logger(stage: str):
    """Return a logger whose records are tagged with ``stage`` for the stage log."""

    return logger.bind(stage=stage)


__all__ = ["InterceptHandler", "StageLogSink", "configure_logging", "is_error_record", "stage_logger"]
