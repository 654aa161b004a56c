"""
Per-job state shared by the native-tool layer.

Everything that used to live in process-wide globals (temporary root,
credentials, detected tool versions) hangs off an UpdateContext so that
concurrent jobs never observe each other's state.
"""

import json
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import yaml

from .cli_config import UpdaterConfig, get_config


@dataclass(frozen=True)
class Credential:
    """Registry or git host credential supplied with a job."""

    type: str
    host: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    index_url: Optional[str] = None
    replaces_base: bool = False

    def secrets(self) -> List[str]:
        return [s for s in (self.password, self.token) if s]


@dataclass
class UpdateContext:
    """
    Job-scoped configuration and caches.

    Tool versions are memoised per context so that two jobs in one process
    can use different npm or bundler majors.
    """

    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    tmp_root: Optional[Path] = None
    credentials: List[Credential] = field(default_factory=list)
    timeout_per_operation_seconds: Optional[int] = None
    config: UpdaterConfig = field(default_factory=get_config)
    _tool_versions: Dict[str, Any] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        if self.tmp_root is None:
            base = self.config.helpers.tmp_root or "/tmp/dep-bumper"
            self.tmp_root = Path(base) / self.job_id
        else:
            self.tmp_root = Path(self.tmp_root)
        if self.timeout_per_operation_seconds is None:
            self.timeout_per_operation_seconds = (
                self.config.subprocess.timeout_per_operation_seconds
            )

    def home_path(self) -> Path:
        """HOME for native tools; created on first use."""
        home = self.tmp_root / "home"
        home.mkdir(parents=True, exist_ok=True)
        return home

    def package_cache_path(self, tool: str) -> Path:
        """Cache directory for one tool, unique to this job (``BUNDLE_PATH`` and friends)."""
        return self.tmp_root / "cache" / tool

    def tool_version(self, key: str, detect: Callable[[], Any]) -> Any:
        with self._lock:
            if key not in self._tool_versions:
                self._tool_versions[key] = detect()
            return self._tool_versions[key]

    def secrets(self) -> List[str]:
        return [secret for credential in self.credentials for secret in credential.secrets()]

    def credentials_of_type(self, credential_type: str) -> List[Credential]:
        return [c for c in self.credentials if c.type == credential_type]

    def npm_version(self, lockfile_content: Optional[str]) -> int:
        """npm major to run for a package-lock.json: 8 for lockfileVersion >= 2, else 6."""
        return self.tool_version(
            f"npm:{hash(lockfile_content)}", lambda: npm_version_numeric(lockfile_content)
        )

    def yarn_version(self, yarn_lock_content: Optional[str]) -> int:
        return self.tool_version(
            f"yarn:{hash(yarn_lock_content)}", lambda: yarn_version_numeric(yarn_lock_content)
        )


def npm_version_numeric(lockfile_content: Optional[str]) -> int:
    if not lockfile_content:
        return 8
    try:
        lockfile_version = json.loads(lockfile_content).get("lockfileVersion", 1)
    except (ValueError, AttributeError):
        return 6
    return 8 if isinstance(lockfile_version, int) and lockfile_version >= 2 else 6


def yarn_berry(yarn_lock_content: Optional[str]) -> bool:
    """Berry lockfiles are YAML with a ``__metadata`` key; classic ones are not YAML at all."""
    if not yarn_lock_content:
        return False
    try:
        parsed = yaml.safe_load(yarn_lock_content)
    except yaml.YAMLError:
        return False
    return isinstance(parsed, Mapping) and "__metadata" in parsed


def yarn_version_numeric(yarn_lock_content: Optional[str]) -> int:
    return 3 if yarn_berry(yarn_lock_content) else 1
