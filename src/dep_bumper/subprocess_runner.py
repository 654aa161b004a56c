"""
Native tool execution.

Every package-manager binary and helper script runs through
SubprocessRunner: a scrubbed environment, its own process group, a
wall-clock limit, and classification of failures into typed errors.
"""

import json
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

from .cli_config import SubprocessConfig, get_config
from .context import UpdateContext
from .error_handling import log_subprocess_error, sanitize_message
from .exceptions import (
    HelperSubprocessFailed,
    NotImplementedByHelper,
    OutOfDisk,
    OutOfMemory,
    SubprocessTimeout,
)
from .structured_logging import log_subprocess_run

MIN_TIMEOUT_SECONDS = 60
MAX_TIMEOUT_SECONDS = 1800

DISK_FULL_PATTERN = re.compile(r"No space left on device|ENOSPC")
OUT_OF_MEMORY_PATTERN = re.compile(r"MemoryError|ENOMEM|Cannot allocate memory")
OOM_EXIT_STATUSES = {137, -signal.SIGKILL}
TIMEOUT_EXIT_STATUS = 124

Command = Union[str, Sequence[str]]


def clamp_timeout(
    seconds: Optional[float],
    minimum: int = MIN_TIMEOUT_SECONDS,
    maximum: int = MAX_TIMEOUT_SECONDS,
) -> int:
    """None or 0 disables the limit; anything else is clamped into [minimum, maximum]."""
    if not seconds:
        return 0
    return max(minimum, min(maximum, int(seconds)))


class TimeoutCommand:
    """Prefixes a command line with ``timeout -s HUP <n>``."""

    def __init__(self, timeout_seconds: Optional[float], config: Optional[SubprocessConfig] = None):
        config = config or get_config().subprocess
        self.timeout_seconds = clamp_timeout(
            timeout_seconds, config.min_timeout_seconds, config.max_timeout_seconds
        )

    def build(self, script: str) -> str:
        if not self.timeout_seconds:
            return script
        return f"timeout -s HUP {self.timeout_seconds} {script}"


@contextmanager
def in_a_temporary_directory(base: Optional[Union[str, Path]] = None) -> Iterator[Path]:
    """Yield a fresh directory under ``base``; it is removed on every exit path."""
    if base is not None:
        Path(base).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix="dep-bumper-", dir=base))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def build_environment(
    overrides: Optional[Mapping[str, Optional[str]]] = None,
    config: Optional[SubprocessConfig] = None,
    source: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Environment for a native tool.

    Starts empty and copies only allow-listed and forwarded (proxy, CA)
    variables, so registry tokens and tool configuration in the parent
    environment never leak into a child. ``None`` in overrides removes a key.
    """
    config = config or get_config().subprocess
    source = os.environ if source is None else source

    env: Dict[str, str] = {}
    for key in list(config.env_allow_list) + list(config.forwarded_env):
        if key in source:
            env[key] = source[key]

    for key, value in (overrides or {}).items():
        if value is None:
            env.pop(key, None)
        else:
            env[key] = str(value)
    return env


def command_fingerprint(
    command: Command,
    secrets: Iterable[str] = (),
    dependency_names: Iterable[str] = (),
) -> str:
    """Command line with credentials and dependency names replaced by placeholders."""
    text = command if isinstance(command, str) else " ".join(shlex.quote(str(c)) for c in command)
    for secret in secrets:
        if secret:
            text = text.replace(secret, "<redacted>")
    for name in sorted(dependency_names, key=len, reverse=True):
        if name:
            text = re.sub(rf"(?<![\w@/.-]){re.escape(name)}(?![\w/-])", "<dependency_name>", text)
    return sanitize_message(text)


@dataclass(frozen=True)
class SubprocessResult:
    fingerprint: str
    exit_status: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def output(self) -> str:
        return self.stdout + self.stderr

    @property
    def success(self) -> bool:
        return self.exit_status == 0


@dataclass
class SubprocessRunner:
    """Runs native tools for one job."""

    context: UpdateContext = field(default_factory=UpdateContext)

    def run(
        self,
        command: Command,
        cwd: Optional[Union[str, Path]] = None,
        env_overrides: Optional[Mapping[str, Optional[str]]] = None,
        timeout_seconds: Optional[float] = None,
        fingerprint: Optional[str] = None,
        allow_unsafe_shell_command: bool = False,
        stdin_data: Optional[str] = None,
    ) -> SubprocessResult:
        """
        Run ``command`` and return its result.

        A string command is split with shlex and executed without a shell
        unless ``allow_unsafe_shell_command`` is set.

        Raises:
            SubprocessTimeout: the wall-clock limit was hit; the process group is killed
            OutOfDisk / OutOfMemory: the tool ran out of resources
            HelperSubprocessFailed: any other non-zero exit
        """
        result = self.execute(
            command, cwd, env_overrides, timeout_seconds, fingerprint,
            allow_unsafe_shell_command, stdin_data,
        )
        if not result.success:
            raise self.classify_failure(result)
        return result

    def execute(
        self,
        command: Command,
        cwd: Optional[Union[str, Path]] = None,
        env_overrides: Optional[Mapping[str, Optional[str]]] = None,
        timeout_seconds: Optional[float] = None,
        fingerprint: Optional[str] = None,
        allow_unsafe_shell_command: bool = False,
        stdin_data: Optional[str] = None,
    ) -> SubprocessResult:
        """Like ``run`` but a non-zero exit is returned rather than raised."""
        if cwd is None:
            with in_a_temporary_directory(self.context.tmp_root) as directory:
                return self.execute(
                    command, directory, env_overrides, timeout_seconds, fingerprint,
                    allow_unsafe_shell_command, stdin_data,
                )

        config = self.context.config.subprocess
        if timeout_seconds is None:
            timeout_seconds = self.context.timeout_per_operation_seconds
        limit = clamp_timeout(timeout_seconds, config.min_timeout_seconds, config.max_timeout_seconds)
        fingerprint = fingerprint or command_fingerprint(command, self.context.secrets())

        if isinstance(command, str) and not allow_unsafe_shell_command:
            args: Union[str, List[str]] = shlex.split(command)
        elif isinstance(command, str):
            args = command
        else:
            args = [str(c) for c in command]

        # HOME points at a per-job directory so user-level tool config never applies
        env = build_environment({"HOME": str(self.context.home_path()), **(env_overrides or {})}, config)
        start = time.monotonic()
        try:
            process = subprocess.Popen(
                args,
                cwd=str(cwd),
                env=env,
                shell=isinstance(args, str),
                stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            log_subprocess_error(
                "Native tool not found", "subprocess_runner", "execute",
                fingerprint=fingerprint, exception=e,
            )
            raise HelperSubprocessFailed(
                f"{e.filename or args}: command not found",
                exit_status=127,
                error_context={"fingerprint": fingerprint, "command": fingerprint},
            )

        try:
            stdout, stderr = process.communicate(stdin_data, timeout=limit or None)
        except subprocess.TimeoutExpired:
            self._kill_process_group(process)
            process.communicate()
            duration_ms = int((time.monotonic() - start) * 1000)
            log_subprocess_run(fingerprint, None, duration_ms, timed_out=True)
            raise SubprocessTimeout(limit, fingerprint)

        duration_ms = int((time.monotonic() - start) * 1000)
        log_subprocess_run(fingerprint, process.returncode, duration_ms)

        wrapped_limit = self._wrapped_timeout_seconds(args)
        if process.returncode == TIMEOUT_EXIT_STATUS and wrapped_limit is not None:
            raise SubprocessTimeout(wrapped_limit, fingerprint)

        return SubprocessResult(
            fingerprint=fingerprint,
            exit_status=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_ms=duration_ms,
        )

    @staticmethod
    def _wrapped_timeout_seconds(args: Union[str, List[str]]) -> Optional[int]:
        """Limit given to a ``timeout`` wrapper, or None when the command is not wrapped."""
        parts = args.split() if isinstance(args, str) else args
        if not parts or os.path.basename(parts[0]) != "timeout":
            return None
        return next((int(part) for part in parts[1:] if part.isdigit()), 0)

    @staticmethod
    def _kill_process_group(process: "subprocess.Popen[str]") -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def classify_failure(self, result: SubprocessResult) -> Exception:
        output = result.output
        if DISK_FULL_PATTERN.search(output):
            return OutOfDisk(f"Out of disk space running [{result.fingerprint}]")
        if OUT_OF_MEMORY_PATTERN.search(output) or result.exit_status in OOM_EXIT_STATUSES:
            return OutOfMemory(f"Out of memory running [{result.fingerprint}]")

        log_subprocess_error(
            "Native tool exited non-zero", "subprocess_runner", "classify_failure",
            fingerprint=result.fingerprint, exit_status=result.exit_status,
        )
        return HelperSubprocessFailed(
            output.strip() or f"Command exited with status {result.exit_status}",
            exit_status=result.exit_status,
            raw_output=output,
            error_context={
                "command": result.fingerprint,
                "fingerprint": result.fingerprint,
                "time_taken": result.duration_ms / 1000.0,
                "process_exit_value": result.exit_status,
            },
        )

    def run_helper_subprocess(
        self,
        command: Command,
        function: str,
        args: Any,
        cwd: Optional[Union[str, Path]] = None,
        env_overrides: Optional[Mapping[str, Optional[str]]] = None,
        timeout_seconds: Optional[float] = None,
        fingerprint: Optional[str] = None,
    ) -> Any:
        """
        Call a JSON helper: ``{"function", "args"}`` on stdin, ``{"result"}`` or ``{"error"}`` on stdout.
        """
        request = json.dumps({"function": function, "args": args})
        result = self.execute(
            command, cwd, env_overrides, timeout_seconds, fingerprint, stdin_data=request
        )
        error_context = {
            "command": result.fingerprint,
            "fingerprint": result.fingerprint,
            "function": function,
            "time_taken": result.duration_ms / 1000.0,
            "process_exit_value": result.exit_status,
        }

        if DISK_FULL_PATTERN.search(result.output) or OUT_OF_MEMORY_PATTERN.search(result.stderr):
            raise self.classify_failure(result)

        try:
            response = json.loads(result.stdout)
        except ValueError:
            if not result.success:
                raise self.classify_failure(result)
            raise HelperSubprocessFailed(
                result.stdout.strip() or "No output from command",
                exit_status=result.exit_status,
                raw_output=result.output,
                error_context=error_context,
                error_class="JSON::ParserError",
            )

        if result.success and isinstance(response, dict) and "error" not in response:
            return response.get("result")

        if isinstance(response, dict) and "error" in response:
            error_context["trace"] = response.get("trace")
            raise HelperSubprocessFailed(
                str(response["error"]),
                exit_status=result.exit_status,
                raw_output=result.output,
                error_context=error_context,
                error_class=response.get("error_class"),
            )
        raise self.classify_failure(result)


class NativeHelpers:
    """
    Locates versioned helper installations and calls into them.

    The root comes from DEP_BUMPER_NATIVE_HELPERS_PATH (or the
    ``helpers.native_helpers_path`` setting) and falls back to the
    ``helpers`` directory shipped next to this package.
    """

    def __init__(self, runner: Optional[SubprocessRunner] = None, context: Optional[UpdateContext] = None):
        self.context = context or (runner.context if runner else UpdateContext())
        self.runner = runner or SubprocessRunner(self.context)

    def native_helpers_root(self, tool: str) -> Path:
        root = os.environ.get("DEP_BUMPER_NATIVE_HELPERS_PATH") or self.context.config.helpers.native_helpers_path
        if root:
            return Path(root) / tool
        return Path(__file__).resolve().parent / "helpers" / tool

    def versioned_helper_path(self, tool: str, major_version: Union[int, str]) -> Path:
        return self.native_helpers_root(tool) / f"v{major_version}"

    def run_bundler_subprocess(self, function: str, args: Any, bundler_version: Union[int, str]) -> Any:
        helpers_path = self.versioned_helper_path("bundler", bundler_version)
        command = TimeoutCommand(
            self.context.timeout_per_operation_seconds, self.context.config.subprocess
        ).build(f"ruby {shlex.quote(str(helpers_path / 'run.rb'))}")
        env = {
            # per-job, so concurrent jobs never share an install location
            "BUNDLE_PATH": str(self.context.package_cache_path("bundler") / ".bundle"),
            "GEM_HOME": str(helpers_path / ".bundle"),
        }
        try:
            return self.runner.run_helper_subprocess(
                command, function, args, env_overrides=env, timeout_seconds=0,
                fingerprint=f"ruby run.rb {function}",
            )
        except HelperSubprocessFailed as e:
            if e.error_class and e.error_class.endswith("NotImplementedError"):
                raise NotImplementedByHelper(str(e)) from e
            raise

    def run_python_helper(self, function: str, args: Any) -> Any:
        script = self.native_helpers_root("python") / "run.py"
        return self.runner.run_helper_subprocess(
            [sys.executable, str(script)], function, args, fingerprint=f"python run.py {function}"
        )

    def get_pyproject_hash(self, pyproject_dir: Union[str, Path]) -> str:
        return self.run_python_helper("get_pyproject_hash", [str(pyproject_dir)])

    def get_pipfile_hash(self, pipfile_dir: Union[str, Path]) -> str:
        return self.run_python_helper("get_pipfile_hash", [str(pipfile_dir)])
