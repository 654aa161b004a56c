"""
Repository access.

The update engine reads manifests and writes commits and pull requests
through a RepositoryContentProvider. LocalDirectoryProvider works on a
checked-out directory and records commits and pull requests as JSON files.
"""

import hashlib
import json
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .cli_config import get_config
from .dependency import DependencyFile, UpdatedDependency
from .exceptions import DependencyFileNotFound, DependencyFileNotParseable, PathDependencyUnreachable
from .source_resolver import check_path_dependency, is_path_declaration


@dataclass(frozen=True)
class Found:
    path: str
    content: str
    ref: Optional[str] = None


@dataclass(frozen=True)
class NotFound:
    path: str
    ref: Optional[str] = None


FetchResult = Union[Found, NotFound]


class RepositoryContentProvider(ABC):
    """Read and write access to one repository."""

    @abstractmethod
    def fetch_file(self, path: str, ref: Optional[str] = None) -> FetchResult:
        """Content of ``path`` at ``ref`` (the default branch when None)."""

    @abstractmethod
    def fetch_tree(self, path: str = "/", ref: Optional[str] = None) -> List[str]:
        """Every file path below ``path``, relative to the repository root."""

    @abstractmethod
    def default_branch(self) -> str:
        pass

    @abstractmethod
    def create_commit(
        self, branch: str, message: str, files: Sequence[DependencyFile], base_ref: Optional[str] = None
    ) -> str:
        """Commit ``files`` on ``branch``; returns the commit id."""

    @abstractmethod
    def create_pull_request(
        self,
        head_branch: str,
        title: str,
        body: str,
        commit_id: str,
        base_branch: Optional[str] = None,
        dependencies: Sequence[UpdatedDependency] = (),
    ) -> Dict[str, Any]:
        pass


class LocalDirectoryProvider(RepositoryContentProvider):
    """A working copy on disk; ``ref`` is ignored."""

    def __init__(
        self,
        root: Union[str, Path],
        output_dir: Optional[Union[str, Path]] = None,
        branch: str = "main",
        max_file_size_bytes: Optional[int] = None,
    ):
        self.root = Path(root).resolve()
        self.max_file_size_bytes = max_file_size_bytes or get_config().security.max_file_size_bytes
        self.output_dir = Path(output_dir) if output_dir else self.root / ".dep-bumper"
        self.branch = branch

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if target != self.root and self.root not in target.parents:
            raise PathDependencyUnreachable([path])
        return target

    def fetch_file(self, path: str, ref: Optional[str] = None) -> FetchResult:
        target = self._resolve(path)
        if not target.is_file():
            return NotFound(path, ref)
        if target.stat().st_size > self.max_file_size_bytes:
            raise DependencyFileNotParseable(path, f"{path} exceeds the {self.max_file_size_bytes} byte limit")
        try:
            return Found(path, target.read_text(encoding="utf-8"), ref)
        except UnicodeDecodeError as e:
            raise DependencyFileNotParseable(path, f"{path} is not UTF-8: {e}")

    def fetch_tree(self, path: str = "/", ref: Optional[str] = None) -> List[str]:
        base = self._resolve(path)
        if not base.is_dir():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in base.rglob("*")
            if p.is_file() and ".git" not in p.relative_to(self.root).parts
        )

    def default_branch(self) -> str:
        return self.branch

    def _write_record(self, kind: str, record_id: str, record: Dict[str, Any]) -> Path:
        directory = self.output_dir / kind
        directory.mkdir(parents=True, exist_ok=True)
        record_path = directory / f"{record_id}.json"
        with open(record_path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2)
        return record_path

    def create_commit(
        self, branch: str, message: str, files: Sequence[DependencyFile], base_ref: Optional[str] = None
    ) -> str:
        record = {
            "branch": branch,
            "base": base_ref or self.default_branch(),
            "message": message,
            "files": [
                {"path": f.path, "content": f.content, "deleted": f.deleted} for f in files
            ],
        }
        commit_id = hashlib.sha1(json.dumps(record, sort_keys=True).encode()).hexdigest()
        record["id"] = commit_id
        record["created_at"] = datetime.now(timezone.utc).isoformat()
        self._write_record("commits", commit_id, record)
        return commit_id

    def create_pull_request(
        self,
        head_branch: str,
        title: str,
        body: str,
        commit_id: str,
        base_branch: Optional[str] = None,
        dependencies: Sequence[UpdatedDependency] = (),
    ) -> Dict[str, Any]:
        record = {
            "head": head_branch,
            "base": base_branch or self.default_branch(),
            "title": title,
            "body": body,
            "commit": commit_id,
            "dependencies": [d.to_dict() for d in dependencies],
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self._write_record("pull_requests", commit_id, record)
        return record


REQUIRED_FILES: Dict[str, Tuple[Tuple[str, ...], ...]] = {
    # each inner tuple lists alternatives; one of them must exist
    "npm_and_yarn": (("package.json",),),
    "pip": (("requirements.txt", "requirements.in", "pyproject.toml", "Pipfile"),),
    "go_modules": (("go.mod",),),
    "bundler": (("Gemfile", "gems.rb"),),
    "nuget": (("packages.config",),),
    "submodules": ((".gitmodules",),),
}

OPTIONAL_FILES: Dict[str, Tuple[str, ...]] = {
    "npm_and_yarn": ("package-lock.json", "npm-shrinkwrap.json", "yarn.lock"),
    "pip": ("requirements.txt", "requirements.in", "pyproject.toml", "poetry.lock", "Pipfile", "Pipfile.lock"),
    "go_modules": ("go.sum",),
    "bundler": ("Gemfile", "gems.rb", "Gemfile.lock", "gems.locked"),
    "nuget": (),
    "submodules": (),
}

SUPPORT_FILES: Dict[str, Tuple[str, ...]] = {
    "npm_and_yarn": (".npmrc", ".yarnrc", ".yarnrc.yml"),
    "pip": (".python-version",),
    "bundler": (".ruby-version",),
}

NPM_DEPENDENCY_TYPES = ("dependencies", "devDependencies", "optionalDependencies", "peerDependencies")
NPM_LOCKFILE_PATH_STARTS = ("file:",)
TARBALL_SUFFIXES = (".tgz", ".tar", ".tar.gz")


def fetch_dependency_files(
    provider: RepositoryContentProvider,
    package_manager: str,
    directory: str = "/",
    ref: Optional[str] = None,
) -> List[DependencyFile]:
    """
    Collect the manifests, lockfiles and support files for one directory.

    Raises:
        DependencyFileNotFound: none of the required manifests exist
        PathDependencyUnreachable: an npm path dependency leaves the repository
    """
    if package_manager not in REQUIRED_FILES:
        raise ValueError(f"Unsupported package manager: {package_manager}")

    directory = "/" + directory.strip("/")
    files: Dict[str, DependencyFile] = {}

    def fetch(name: str, support_file: bool = False) -> Optional[DependencyFile]:
        result = provider.fetch_file(posixpath.join(directory, name), ref)
        if isinstance(result, NotFound):
            return None
        file = DependencyFile(name=name, content=result.content, directory=directory, support_file=support_file)
        files.setdefault(name, file)
        return file

    for alternatives in REQUIRED_FILES[package_manager]:
        if not any([fetch(name) for name in alternatives]):
            raise DependencyFileNotFound(
                posixpath.join(directory, alternatives[0]),
                f"No {' or '.join(alternatives)} found in {directory}",
            )
    for name in OPTIONAL_FILES.get(package_manager, ()):
        if name not in files:
            fetch(name)
    for name in SUPPORT_FILES.get(package_manager, ()):
        fetch(name, support_file=True)

    if package_manager == "npm_and_yarn":
        for file in npm_path_dependency_files(provider, directory, list(files.values()), ref):
            files.setdefault(file.name, file)

    return list(files.values())


def npm_path_dependency_details(file: DependencyFile, directory: str = "/") -> List[Tuple[str, str]]:
    """``(name, path)`` pairs for ``file:``/``link:`` dependencies, paths relative to the repository root."""
    if file.name.endswith("package.json"):
        try:
            manifest = json.loads(file.content or "{}")
        except ValueError:
            raise DependencyFileNotParseable(file.path)
        sections = [manifest.get(t) for t in NPM_DEPENDENCY_TYPES if manifest.get(t) is not None]
        resolutions = manifest.get("resolutions")
        if not all(isinstance(s, dict) for s in sections) or (
            resolutions is not None and not isinstance(resolutions, dict)
        ):
            raise DependencyFileNotParseable(file.path)

        entries = [item for section in sections for item in section.items()]
        for glob, value in (resolutions or {}).items():
            # "parent/**/@scope/target" -> "@scope/target"
            parts = glob.split("/")[-2:]
            if len(parts) == 2 and not parts[0].startswith("@"):
                parts = parts[1:]
            entries.append(("/".join(parts), value))

        current_dir = posixpath.join(directory, posixpath.dirname(file.name))
        return [
            (name, check_path_dependency(name, value, current_dir))
            for name, value in entries
            if is_path_declaration(value)
        ]

    if file.name.endswith(("package-lock.json", "npm-shrinkwrap.json")):
        try:
            lockfile = json.loads(file.content or "{}")
        except ValueError:
            raise DependencyFileNotParseable(file.path)
        details = []
        for name, entry in (lockfile.get("dependencies") or {}).items():
            version = entry.get("version", "") if isinstance(entry, dict) else ""
            # a bare "file:" resolves to the project itself
            if version.startswith(NPM_LOCKFILE_PATH_STARTS) and version != "file:":
                details.append((name, check_path_dependency(name, version, directory)))
        return details

    return []


def npm_path_dependency_files(
    provider: RepositoryContentProvider,
    directory: str,
    fetched: List[DependencyFile],
    ref: Optional[str] = None,
) -> List[DependencyFile]:
    """Fetch the package.json of every path dependency, recursively, as support files."""
    found: List[DependencyFile] = []
    known = {f.name for f in fetched}
    pending = list(fetched)

    while pending:
        file = pending.pop(0)
        for name, path in npm_path_dependency_details(file, directory):
            repo_path = "/" + (path if path.endswith(TARBALL_SUFFIXES) else posixpath.join(path, "package.json"))
            filename = posixpath.relpath(repo_path, directory)
            if filename in known:
                continue
            known.add(filename)

            result = provider.fetch_file(repo_path, ref)
            if isinstance(result, Found):
                content = result.content
            elif filename.endswith(TARBALL_SUFFIXES):
                continue
            else:
                # an unfetchable path dependency still needs a manifest to lock against
                content = json.dumps({"name": name, "version": "0.0.1"})

            dependency_file = DependencyFile(
                name=filename, content=content, directory=directory, support_file=True
            )
            found.append(dependency_file)
            if not filename.endswith(TARBALL_SUFFIXES):
                pending.append(dependency_file)
    return found
