"""
Typed errors raised by the update engine.

Per-dependency errors are recorded and the batch continues; job-halting
errors (resource exhaustion) abort the whole batch.
"""

from typing import Any, Dict, List, Optional


class DepBumperError(Exception):
    """Base class for all update engine errors."""

    error_type = "unknown_error"
    job_halting = False

    def error_details(self) -> Optional[Dict[str, Any]]:
        return {"message": str(self)}


class InvalidVersion(DepBumperError, ValueError):
    """A version string does not parse under the ecosystem grammar."""

    error_type = "invalid_version"

    def __init__(self, raw: Any, ecosystem: Optional[str] = None):
        self.raw = raw
        self.ecosystem = ecosystem
        suffix = f" for {ecosystem}" if ecosystem else ""
        super().__init__(f"Malformed version number string {raw!r}{suffix}")


class BadRequirement(DepBumperError, ValueError):
    """A requirement string does not parse under the ecosystem grammar."""

    error_type = "bad_requirement"

    def __init__(self, raw: Any, reason: Optional[str] = None):
        self.raw = raw
        message = f"Illformed requirement [{raw!r}]"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ContentNotChanged(DepBumperError):
    """A patch produced content identical to its input."""

    error_type = "content_not_changed"

    def __init__(self, file_name: str, dependency_names: Optional[List[str]] = None):
        self.file_name = file_name
        self.dependency_names = dependency_names or []
        super().__init__(f"Content did not change! ({file_name})")

    def error_details(self) -> Optional[Dict[str, Any]]:
        return {"file_name": self.file_name, "dependencies": self.dependency_names}


class LockfileNotChanged(DepBumperError):
    """A lockfile expected to change is byte-identical after regeneration."""

    error_type = "lockfile_not_changed"

    def __init__(self, file_name: str):
        self.file_name = file_name
        super().__init__("Expected lockfile to change!")

    def error_details(self) -> Optional[Dict[str, Any]]:
        return {"message": str(self), "file_name": self.file_name}


class DependencyFileNotFound(DepBumperError):
    error_type = "dependency_file_not_found"

    def __init__(self, file_path: str, message: Optional[str] = None):
        self.file_path = file_path
        super().__init__(message or f"{file_path} not found")

    def error_details(self) -> Optional[Dict[str, Any]]:
        return {"file-path": self.file_path}


class DependencyFileNotParseable(DepBumperError):
    error_type = "dependency_file_not_parseable"

    def __init__(self, file_path: str, message: Optional[str] = None):
        self.file_path = file_path
        super().__init__(message or f"{file_path} could not be parsed")

    def error_details(self) -> Optional[Dict[str, Any]]:
        return {"file-path": self.file_path, "message": str(self)}


class DependencyFileNotResolvable(DepBumperError):
    error_type = "dependency_file_not_resolvable"


class PathDependencyUnreachable(DepBumperError):
    """A path dependency points outside the permitted directory tree."""

    error_type = "path_dependencies_not_reachable"

    def __init__(self, dependencies: List[str]):
        self.dependencies = list(dependencies)
        super().__init__(
            "The following path based dependencies could not be retrieved: "
            + ", ".join(self.dependencies)
        )

    def error_details(self) -> Optional[Dict[str, Any]]:
        return {"dependencies": self.dependencies}


class HelperSubprocessFailed(DepBumperError):
    """A native tool or helper exited non-zero."""

    def __init__(
        self,
        message: str,
        exit_status: Optional[int] = None,
        raw_output: str = "",
        error_context: Optional[Dict[str, Any]] = None,
        error_class: Optional[str] = None,
    ):
        self.exit_status = exit_status
        self.raw_output = raw_output
        self.error_context = dict(error_context or {})
        self.error_class = error_class
        super().__init__(message)

    @property
    def fingerprint(self) -> Optional[str]:
        return self.error_context.get("fingerprint")

    def error_details(self) -> Optional[Dict[str, Any]]:
        # Raw output may contain dependency names or credentials.
        return None


class SubprocessTimeout(DepBumperError):
    """A native tool exceeded its wall-clock limit and was terminated."""

    error_type = "subprocess_timeout"

    def __init__(self, timeout_seconds: float, fingerprint: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        self.fingerprint = fingerprint
        super().__init__(
            f"Subprocess [{fingerprint or 'unknown'}] timed out after {timeout_seconds}s"
        )

    def error_details(self) -> Optional[Dict[str, Any]]:
        return {"timeout_seconds": self.timeout_seconds, "fingerprint": self.fingerprint}


class ResourceExhausted(DepBumperError):
    """Disk or memory ran out; the whole job must stop."""

    error_type = "resource_exhausted"
    job_halting = True


class OutOfDisk(ResourceExhausted):
    error_type = "out_of_disk"


class OutOfMemory(ResourceExhausted):
    error_type = "out_of_memory"


class NotImplementedByHelper(DepBumperError):
    error_type = "not_implemented"


class SubprocessFailed(DepBumperError):
    """Sanitized stand-in for HelperSubprocessFailed, safe for telemetry."""

    def __init__(self, message: str, telemetry_context: Dict[str, Any]):
        self.telemetry_context = telemetry_context
        super().__init__(message)

    @classmethod
    def from_helper_failure(cls, error: HelperSubprocessFailed) -> "SubprocessFailed":
        context = dict(error.error_context)
        fingerprint = context.pop("fingerprint", None) or context.get("command")
        message = (
            f'Subprocess ["{fingerprint}"] failed to run. '
            "Check the job logs for error messages"
        )
        return cls(message, {"fingerprint": [fingerprint], "extra": context})
