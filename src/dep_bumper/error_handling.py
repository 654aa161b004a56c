"""
Error handling for Dep-Bumper.

Classifies update errors, records them per dependency or per job, and
keeps everything that leaves the process (logs, telemetry records) free of
credentials.
"""

import logging
import re
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .exceptions import (
    BadRequirement,
    ContentNotChanged,
    DepBumperError,
    DependencyFileNotFound,
    DependencyFileNotParseable,
    HelperSubprocessFailed,
    InvalidVersion,
    LockfileNotChanged,
    PathDependencyUnreachable,
    ResourceExhausted,
    SubprocessFailed,
    SubprocessTimeout,
)


class ErrorLevel(Enum):
    """Error severity levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ErrorCategory(Enum):
    """Error categories for better classification."""

    PARSING = "PARSING"
    VALIDATION = "VALIDATION"
    FILE_UPDATE = "FILE_UPDATE"
    SUBPROCESS = "SUBPROCESS"
    RESOURCE = "RESOURCE"
    SECURITY = "SECURITY"
    NETWORK = "NETWORK"
    CONFIGURATION = "CONFIGURATION"
    UNKNOWN = "UNKNOWN"


_CATEGORY_BY_ERROR = (
    (ResourceExhausted, ErrorCategory.RESOURCE),
    ((InvalidVersion, BadRequirement), ErrorCategory.VALIDATION),
    ((ContentNotChanged, LockfileNotChanged), ErrorCategory.FILE_UPDATE),
    ((HelperSubprocessFailed, SubprocessTimeout), ErrorCategory.SUBPROCESS),
    (PathDependencyUnreachable, ErrorCategory.SECURITY),
    ((DependencyFileNotFound, DependencyFileNotParseable), ErrorCategory.PARSING),
)


def categorize_error(error: BaseException) -> ErrorCategory:
    for error_types, category in _CATEGORY_BY_ERROR:
        if isinstance(error, error_types):
            return category
    return ErrorCategory.UNKNOWN


@dataclass
class ErrorContext:
    """Structured error context information."""

    level: ErrorLevel
    category: ErrorCategory
    message: str
    module: str
    function: str
    details: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[BaseException] = None
    traceback_info: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert error context to dictionary for logging."""
        return {
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "module": self.module,
            "function": self.function,
            "details": self.details,
            "exception_type": type(self.exception).__name__ if self.exception else None,
            "exception_message": str(self.exception) if self.exception else None,
            "traceback": self.traceback_info,
        }


@dataclass(frozen=True)
class ErrorRecord:
    """What gets reported upstream for one failed dependency or job."""

    error_type: str
    error_details: Optional[Dict[str, Any]]
    dependency_name: Optional[str] = None
    category: ErrorCategory = ErrorCategory.UNKNOWN
    fingerprint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "error_details": self.error_details,
            "dependency": self.dependency_name,
            "category": self.category.value,
            "fingerprint": self.fingerprint,
        }


_SENSITIVE_PATTERNS = [
    (r'token["\s]*[:=]["\s]*([a-zA-Z0-9_\-+=/.]{8,})', 'token="[REDACTED]"'),
    (r'password["\s]*[:=]["\s]*([^\s"\']+)', 'password="[REDACTED]"'),
    (r"(https?://[^@\s/]+:)[^@\s]+@", r"\1[REDACTED]@"),
    (r"(https?://)[^@\s/:]+@", r"\1[REDACTED]@"),
    (r"Authorization:\s*\w+\s+([^\s]+)", "Authorization: [REDACTED]"),
    (r"\b(gh[pousr]_[A-Za-z0-9]{20,})", "[REDACTED]"),
    (r"(_authToken=)\S+", r"\1[REDACTED]"),
]


def sanitize_message(message: str) -> str:
    """Remove credentials from free text."""
    sanitized = message
    for pattern, replacement in _SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
    return sanitized


class SecureLogger:
    """Logger wrapper that sanitizes sensitive information."""

    def __init__(self, name: str, level: int = logging.WARNING):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
            self.logger.addHandler(handler)

    def _sanitize_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        sanitized = {}
        sensitive_keys = {"token", "password", "secret", "credential", "auth"}

        for key, value in data.items():
            if any(sensitive_key in key.lower() for sensitive_key in sensitive_keys):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_dict(value)
            elif isinstance(value, str):
                sanitized[key] = sanitize_message(value)
            else:
                sanitized[key] = value

        return sanitized

    def log_error_context(self, context: ErrorContext) -> None:
        log_data = {
            "category": context.category.value,
            "module": context.module,
            "function": context.function,
            "details": self._sanitize_dict(context.details),
        }
        if context.exception:
            log_data["exception"] = type(context.exception).__name__

        log_message = f"{sanitize_message(context.message)} | {log_data}"
        self.logger.log(getattr(logging, context.level.value), log_message)

    def info(self, message: str) -> None:
        self.logger.info(sanitize_message(message))

    def error(self, message: str) -> None:
        self.logger.error(sanitize_message(message))


# Error callback type
ErrorCallback = Callable[[ErrorContext], None]
ExceptionSink = Callable[[BaseException, Optional[str]], None]


class ErrorHandler:
    """
    Centralized error handler.

    Dependency errors are recorded and swallowed so that sibling
    dependencies keep updating; job-halting errors are re-raised.
    """

    def __init__(
        self,
        logger_name: str = "dep_bumper",
        log_level: int = logging.WARNING,
        enable_callbacks: bool = True,
        max_records: int = 1000,
    ):
        self.logger = SecureLogger(logger_name, log_level)
        self.max_records = max_records
        self.enable_callbacks = enable_callbacks
        self.error_callbacks: Dict[ErrorCategory, List[ErrorCallback]] = {}
        self.global_callbacks: List[ErrorCallback] = []
        self.exception_sinks: List[ExceptionSink] = []
        self.error_stats: Dict[str, int] = {}
        self.records: List[ErrorRecord] = []

    def register_callback(
        self, callback: ErrorCallback, category: Optional[ErrorCategory] = None
    ) -> None:
        """
        Register error callback.

        Args:
            callback: Function to call on errors
            category: Error category to filter, None for all errors
        """
        if not self.enable_callbacks:
            return

        if category is None:
            self.global_callbacks.append(callback)
        else:
            self.error_callbacks.setdefault(category, []).append(callback)

    def register_exception_sink(self, sink: ExceptionSink) -> None:
        """Register a telemetry sink that receives sanitized unknown errors."""
        self.exception_sinks.append(sink)

    def handle_error(
        self,
        level: ErrorLevel,
        category: ErrorCategory,
        message: str,
        module: str,
        function: str,
        exception: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ErrorContext:
        context = ErrorContext(
            level=level,
            category=category,
            message=message,
            module=module,
            function=function,
            details=details or {},
            exception=exception,
            traceback_info=(
                "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))
                if exception
                else None
            ),
        )

        stat_key = f"{category.value}_{level.value}"
        self.error_stats[stat_key] = self.error_stats.get(stat_key, 0) + 1

        self.logger.log_error_context(context)

        if self.enable_callbacks:
            for callback in self.error_callbacks.get(category, []) + self.global_callbacks:
                try:
                    callback(context)
                except Exception as cb_error:
                    # Don't let callback errors break the main flow
                    self.logger.logger.error(f"Error in callback: {cb_error}")

        return context

    def warning(self, category: ErrorCategory, message: str, module: str, function: str, **kwargs) -> ErrorContext:
        return self.handle_error(ErrorLevel.WARNING, category, message, module, function, **kwargs)

    def error(self, category: ErrorCategory, message: str, module: str, function: str, **kwargs) -> ErrorContext:
        return self.handle_error(ErrorLevel.ERROR, category, message, module, function, **kwargs)

    def critical(self, category: ErrorCategory, message: str, module: str, function: str, **kwargs) -> ErrorContext:
        return self.handle_error(ErrorLevel.CRITICAL, category, message, module, function, **kwargs)

    def handle_dependency_error(
        self, error: BaseException, dependency_name: str
    ) -> ErrorRecord:
        """
        Record an error raised while updating a single dependency.

        Raises:
            ResourceExhausted: re-raised untouched, it halts the job
        """
        return self._handle(error, dependency_name)

    def handle_job_error(self, error: BaseException) -> ErrorRecord:
        """Record an error raised outside of any single dependency."""
        return self._handle(error, None)

    def _handle(self, error: BaseException, dependency_name: Optional[str]) -> ErrorRecord:
        if getattr(error, "job_halting", False):
            self.handle_error(
                ErrorLevel.CRITICAL,
                categorize_error(error),
                f"Job halted: {error}",
                "error_handling",
                "handle_error",
                exception=error,
            )
            raise error

        subject = dependency_name or "job"
        category = categorize_error(error)

        if self._is_known(error):
            record = ErrorRecord(
                error_type=error.error_type,
                error_details=error.error_details(),
                dependency_name=dependency_name,
                category=category,
                fingerprint=getattr(error, "fingerprint", None),
            )
            whilst = f"updating {dependency_name}" if dependency_name else "processing job"
            self.logger.info(
                f"Handled error whilst {whilst}: {record.error_type} {record.error_details}"
            )
        else:
            record = ErrorRecord(
                error_type="unknown_error",
                error_details=None,
                dependency_name=dependency_name,
                category=category,
                fingerprint=getattr(error, "fingerprint", None),
            )
            self.logger.error(f"Error processing {subject} ({self._class_path(error)})")
            self.logger.error(str(error))
            for line in traceback.format_tb(error.__traceback__):
                self.logger.error(line.rstrip())
            self._capture_exception(error, dependency_name)

        stat_key = f"{category.value}_{record.error_type}"
        self.error_stats[stat_key] = self.error_stats.get(stat_key, 0) + 1
        self.records.append(record)
        # oldest first out; error_stats keeps the full counts
        if len(self.records) > self.max_records:
            del self.records[: len(self.records) - self.max_records]
        return record

    @staticmethod
    def _is_known(error: BaseException) -> bool:
        return (
            isinstance(error, DepBumperError)
            and not isinstance(error, HelperSubprocessFailed)
            and error.error_type != "unknown_error"
        )

    @staticmethod
    def _class_path(error: BaseException) -> str:
        cls = type(error)
        if cls.__module__ == "builtins":
            return cls.__name__
        return f"{cls.__module__}.{cls.__name__}"

    def _capture_exception(self, error: BaseException, dependency_name: Optional[str]) -> None:
        if isinstance(error, HelperSubprocessFailed):
            error = SubprocessFailed.from_helper_failure(error)
        for sink in self.exception_sinks:
            try:
                sink(error, dependency_name)
            except Exception as sink_error:
                self.logger.logger.error(f"Error in exception sink: {sink_error}")

    def get_error_stats(self) -> Dict[str, int]:
        return self.error_stats.copy()

    def reset_stats(self) -> None:
        self.error_stats.clear()
        self.records.clear()


# Global error handler instance
_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance."""
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def setup_error_handling(
    log_level: int = logging.WARNING,
    enable_callbacks: bool = True,
    logger_name: str = "dep_bumper",
) -> ErrorHandler:
    """
    Setup global error handling configuration.

    Args:
        log_level: Logging level
        enable_callbacks: Whether to enable callbacks
        logger_name: Logger name

    Returns:
        ErrorHandler: Configured error handler
    """
    global _global_error_handler
    _global_error_handler = ErrorHandler(logger_name, log_level, enable_callbacks)
    return _global_error_handler


def log_subprocess_error(
    message: str,
    module: str,
    function: str,
    fingerprint: Optional[str] = None,
    exit_status: Optional[int] = None,
    exception: Optional[BaseException] = None,
) -> None:
    """Convenience function for logging native tool failures."""
    details: Dict[str, Any] = {}
    if fingerprint is not None:
        details["fingerprint"] = fingerprint
    if exit_status is not None:
        details["exit_status"] = exit_status

    get_error_handler().warning(
        ErrorCategory.SUBPROCESS,
        message,
        module,
        function,
        details=details,
        exception=exception,
    )


def log_parsing_error(
    message: str,
    module: str,
    function: str,
    file_name: Optional[str] = None,
    exception: Optional[BaseException] = None,
) -> None:
    """Convenience function for logging manifest / lockfile parsing errors."""
    details = {"file_name": file_name} if file_name else {}
    get_error_handler().warning(
        ErrorCategory.PARSING,
        message,
        module,
        function,
        details=details,
        exception=exception,
    )
