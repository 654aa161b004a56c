"""
Structured logging configuration for dep-bumper.

Emits one JSON object per event so update runs can be aggregated by job,
dependency and native-tool fingerprint.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "getMessage",
    "exc_info",
    "exc_text",
    "stack_info",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class UpdateLogger:
    """Structured logger for one engine component."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(f"dep_bumper.{name}")
        self._setup_logger()
        self.run_context: Dict[str, Any] = {}

    def _setup_logger(self) -> None:
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)
            self.logger.propagate = False

    def set_run_context(
        self,
        job_id: Optional[str] = None,
        dependency_name: Optional[str] = None,
        package_manager: Optional[str] = None,
    ) -> None:
        self.run_context = {}
        if job_id:
            self.run_context["job_id"] = job_id
        if dependency_name:
            self.run_context["dependency_name"] = dependency_name
        if package_manager:
            self.run_context["package_manager"] = package_manager

    def clear_run_context(self) -> None:
        self.run_context.clear()

    def _log(self, level: str, event_type: str, **kwargs) -> None:
        log_data = {"event_type": event_type, **self.run_context, **kwargs}
        getattr(self.logger, level)(event_type, extra=log_data)

    def info(self, event_type: str, **kwargs) -> None:
        self._log("info", event_type, **kwargs)

    def warning(self, event_type: str, **kwargs) -> None:
        self._log("warning", event_type, **kwargs)

    def error(self, event_type: str, **kwargs) -> None:
        self._log("error", event_type, **kwargs)

    def debug(self, event_type: str, **kwargs) -> None:
        self._log("debug", event_type, **kwargs)


# Global logger instances
_updater_logger = UpdateLogger("updater")
_subprocess_logger = UpdateLogger("subprocess")
_file_updater_logger = UpdateLogger("file_updater")
_resolver_logger = UpdateLogger("resolver")

_ALL_LOGGERS = [_updater_logger, _subprocess_logger, _file_updater_logger, _resolver_logger]


def get_updater_logger() -> UpdateLogger:
    return _updater_logger


def get_subprocess_logger() -> UpdateLogger:
    return _subprocess_logger


def get_file_updater_logger() -> UpdateLogger:
    return _file_updater_logger


def get_resolver_logger() -> UpdateLogger:
    return _resolver_logger


def log_update_start(job_id: str, dependency_name: str, package_manager: str) -> None:
    set_run_context(job_id, dependency_name, package_manager)
    _updater_logger.info("update_started")


def log_update_complete(
    dependency_name: str,
    status: str,
    duration_ms: int,
    previous_version: Optional[str] = None,
    new_version: Optional[str] = None,
    updated_files: int = 0,
) -> None:
    """Log the terminal state of one dependency update."""
    log_data: Dict[str, Any] = {
        "dependency_name": dependency_name,
        "status": status,
        "duration_ms": duration_ms,
        "updated_files": updated_files,
    }
    if previous_version is not None:
        log_data["previous_version"] = previous_version
    if new_version is not None:
        log_data["new_version"] = new_version

    if status == "failed":
        _updater_logger.warning("update_failed", **log_data)
    else:
        _updater_logger.info("update_completed", **log_data)
    clear_run_context()


def log_state_transition(from_state: str, to_state: str) -> None:
    _updater_logger.debug("state_transition", from_state=from_state, to_state=to_state)


def log_resolution(
    dependency_name: str,
    source_type: str,
    outcome: str,
    target: Optional[str] = None,
) -> None:
    log_data = {"dependency_name": dependency_name, "source_type": source_type, "outcome": outcome}
    if target is not None:
        log_data["target"] = target
    _resolver_logger.info("target_resolved", **log_data)


def log_subprocess_run(
    fingerprint: str,
    exit_status: Optional[int],
    duration_ms: int,
    timed_out: bool = False,
) -> None:
    log_data = {
        "fingerprint": fingerprint,
        "exit_status": exit_status,
        "duration_ms": duration_ms,
    }
    if timed_out:
        _subprocess_logger.warning("subprocess_timed_out", **log_data)
    elif exit_status:
        _subprocess_logger.warning("subprocess_failed", **log_data)
    else:
        _subprocess_logger.debug("subprocess_completed", **log_data)


def log_file_updated(file_name: str, dependency_names: list, changed: bool = True) -> None:
    _file_updater_logger.info(
        "file_updated" if changed else "file_unchanged",
        file_name=file_name,
        dependencies=dependency_names,
    )


def set_run_context(
    job_id: Optional[str] = None,
    dependency_name: Optional[str] = None,
    package_manager: Optional[str] = None,
) -> None:
    """Set run context for all loggers."""
    for logger in _ALL_LOGGERS:
        logger.set_run_context(job_id, dependency_name, package_manager)


def clear_run_context() -> None:
    for logger in _ALL_LOGGERS:
        logger.clear_run_context()


def configure_logging(log_level: str = "INFO") -> None:
    """Configure logging for the application."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    for logger in _ALL_LOGGERS:
        logger.logger.setLevel(level)


# Initialize with default configuration
configure_logging()
