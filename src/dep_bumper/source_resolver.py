"""
Source classification and target version resolution.

Decides where a dependency comes from (registry, git or a local path) and
which version, tag or commit it should move to.
"""

import posixpath
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Union
from urllib.parse import urlparse, urlunparse

from .context import Credential
from .dependency import Dependency, DependencyRequirement
from .exceptions import BadRequirement, InvalidVersion, PathDependencyUnreachable
from .requirements import requirement_class_for
from .structured_logging import log_resolution
from .subprocess_runner import SubprocessRunner, in_a_temporary_directory
from .versions import BaseVersion, looks_like_commit_sha, normalize_version_string, version_class_for

PATH_DEPENDENCY_STARTS = ("file:", "link:.", "link:/", "link:~/", "/", "./", "../", "~/")
PATH_DEPENDENCY_CLEAN_REGEX = re.compile(r"^file:|^link:")

# Action refs look like git sources but are resolved by their own updater.
GIT_SOURCE_EXCLUDED_PACKAGE_MANAGERS = {"github_actions"}


@dataclass(frozen=True)
class RegistrySource:
    url: Optional[str] = None
    type: str = "registry"


@dataclass(frozen=True)
class GitSource:
    url: str
    ref: Optional[str] = None
    branch: Optional[str] = None
    type: str = "git"

    @property
    def pinned_to_commit(self) -> bool:
        return looks_like_commit_sha(self.ref)

    @property
    def tracks_branch(self) -> bool:
        return bool(self.branch) and (self.ref is None or self.ref == self.branch)


@dataclass(frozen=True)
class PathSource:
    path: str
    type: str = "path"


SourceDescriptor = Union[RegistrySource, GitSource, PathSource]


def source_for(requirement: DependencyRequirement) -> SourceDescriptor:
    source = requirement.source or {}
    source_type = source.get("type")
    if source_type == "git":
        return GitSource(url=source.get("url", ""), ref=source.get("ref"), branch=source.get("branch"))
    if source_type == "path":
        return PathSource(path=source.get("path", ""))
    return RegistrySource(url=source.get("url"))


def classify(dependency: Dependency) -> SourceDescriptor:
    """One descriptor for the whole dependency; mixed sources count as the registry."""
    sources = {source_for(r) for r in dependency.requirements}
    if len(sources) == 1:
        source = sources.pop()
        if isinstance(source, GitSource) and not is_git_dependency(dependency):
            return RegistrySource()
        return source
    if sources and all(isinstance(s, GitSource) for s in sources) and is_git_dependency(dependency):
        # several requirements agree on the repository but not the ref
        return next(iter(sorted(sources, key=lambda s: (s.url, s.ref or "", s.branch or ""))))
    return RegistrySource()


def is_git_dependency(dependency: Dependency) -> bool:
    """True only when every requirement is sourced from git."""
    if dependency.package_manager in GIT_SOURCE_EXCLUDED_PACKAGE_MANAGERS:
        return False
    if not dependency.requirements:
        return False
    return all(r.source_type == "git" for r in dependency.requirements)


def _single_ref(requirements: Iterable[DependencyRequirement]) -> Optional[str]:
    refs = {(r.source or {}).get("ref") for r in requirements if r.source_type == "git"}
    if len(refs) != 1:
        return None
    return refs.pop()


def new_ref(dependency: Dependency) -> Optional[str]:
    if not is_git_dependency(dependency):
        return None
    return _single_ref(dependency.requirements)


def previous_ref(dependency: Dependency) -> Optional[str]:
    if not is_git_dependency(dependency) or dependency.previous_requirements is None:
        return None
    return _single_ref(dependency.previous_requirements)


def ref_changed(dependency: Dependency) -> bool:
    if dependency.previous_requirements is None:
        return False
    return previous_ref(dependency) != new_ref(dependency)


def is_path_declaration(value: object) -> bool:
    return isinstance(value, str) and value.startswith(PATH_DEPENDENCY_STARTS)


def check_path_dependency(name: str, path: str, manifest_dir: str = "/") -> str:
    """
    Resolve a path dependency against the manifest's directory.

    Returns the cleaned path relative to the repository root.

    Raises:
        PathDependencyUnreachable: the path is absolute or leaves the repository
    """
    cleaned = PATH_DEPENDENCY_CLEAN_REGEX.sub("", path)
    if cleaned.startswith(("/", "~")):
        raise PathDependencyUnreachable([f"{name} at {cleaned}"])

    joined = posixpath.normpath(posixpath.join(manifest_dir.strip("/") or ".", cleaned))
    if joined == ".." or joined.startswith("../"):
        raise PathDependencyUnreachable([f"{name} at {cleaned}"])
    return joined


class ResolutionOutcome(Enum):
    UPDATE_NEEDED = "update_needed"
    NO_UPDATE_NEEDED = "no_update_needed"
    UNDETERMINED = "undetermined"


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    target: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def update_needed(cls, target: str) -> "Resolution":
        return cls(ResolutionOutcome.UPDATE_NEEDED, target=target)

    @classmethod
    def no_update_needed(cls, reason: Optional[str] = None) -> "Resolution":
        return cls(ResolutionOutcome.NO_UPDATE_NEEDED, reason=reason)

    @classmethod
    def undetermined(cls, reason: Optional[str] = None) -> "Resolution":
        return cls(ResolutionOutcome.UNDETERMINED, reason=reason)

    @property
    def update_required(self) -> bool:
        return self.outcome is ResolutionOutcome.UPDATE_NEEDED


@dataclass(frozen=True)
class GitRef:
    name: str
    commit_sha: str
    ref_type: str  # "head", "tag" or "HEAD"


class GitCommitChecker:
    """Reads a remote's branches and tags with ``git ls-remote``."""

    def __init__(
        self,
        url: str,
        runner: Optional[SubprocessRunner] = None,
        credentials: Sequence[Credential] = (),
    ):
        self.url = url
        self.runner = runner or SubprocessRunner()
        self.credentials = list(credentials) or self.runner.context.credentials_of_type("git_source")
        self._refs: Optional[List[GitRef]] = None

    def _authenticated_url(self) -> str:
        parsed = urlparse(self.url)
        if parsed.scheme not in ("http", "https") or parsed.username:
            return self.url
        for credential in self.credentials:
            secret = credential.token or credential.password
            if credential.host == parsed.hostname and secret:
                username = credential.username or "x-access-token"
                netloc = f"{username}:{secret}@{parsed.netloc}"
                return urlunparse(parsed._replace(netloc=netloc))
        return self.url

    @staticmethod
    def parse_ls_remote(output: str) -> List[GitRef]:
        """Parse ``<sha>\\t<ref>`` lines; peeled tag lines (``^{}``) win over the tag object."""
        refs: List[GitRef] = []
        peeled = {}
        for line in output.splitlines():
            parts = line.strip().split("\t")
            if len(parts) != 2:
                continue
            sha, ref = parts
            if ref == "HEAD":
                refs.append(GitRef("HEAD", sha, "HEAD"))
            elif ref.startswith("refs/heads/"):
                refs.append(GitRef(ref[len("refs/heads/"):], sha, "head"))
            elif ref.startswith("refs/tags/"):
                name = ref[len("refs/tags/"):]
                if name.endswith("^{}"):
                    peeled[name[:-3]] = sha
                else:
                    refs.append(GitRef(name, sha, "tag"))
        return [
            GitRef(r.name, peeled.get(r.name, r.commit_sha), r.ref_type) if r.ref_type == "tag" else r
            for r in refs
        ]

    def local_refs(self) -> List[GitRef]:
        if self._refs is None:
            # outside any checkout, so no repository config applies
            with in_a_temporary_directory(self.runner.context.tmp_root) as directory:
                result = self.runner.run(
                    ["git", "ls-remote", self._authenticated_url()],
                    cwd=directory,
                    env_overrides={"GIT_TERMINAL_PROMPT": "0"},
                    fingerprint=f"git ls-remote {self.url}",
                )
            self._refs = self.parse_ls_remote(result.stdout)
        return self._refs

    def head_commit_for_branch(self, branch: Optional[str]) -> Optional[str]:
        wanted = branch or "HEAD"
        for ref in self.local_refs():
            if ref.name == wanted and ref.ref_type in ("head", "HEAD"):
                return ref.commit_sha
        return None

    def tags(self) -> List[GitRef]:
        return [r for r in self.local_refs() if r.ref_type == "tag"]

    def latest_version_tag(self, package_manager: str) -> Optional[GitRef]:
        version_class = version_class_for(package_manager)
        candidates = []
        for tag in self.tags():
            raw = normalize_version_string(re.sub(r"^.*/", "", tag.name))
            if looks_like_commit_sha(raw) or not version_class.correct(raw):
                continue
            version = version_class(raw)
            if not version.prerelease:
                candidates.append((version, tag))
        if not candidates:
            return None
        return max(candidates, key=lambda pair: pair[0])[1]


def _is_ignored(version: BaseVersion, package_manager: str, ignored_versions: Iterable[str]) -> bool:
    for ignored in ignored_versions:
        try:
            requirement_class = requirement_class_for(package_manager)
            if any(r.satisfied_by(version) for r in requirement_class.requirements_array(ignored)):
                return True
        except (ValueError, BadRequirement, InvalidVersion):
            if str(version) == ignored:
                return True
    return False


def latest_registry_version(
    dependency: Dependency,
    available_versions: Iterable[str],
    ignored_versions: Iterable[str] = (),
    allow_prereleases: bool = False,
    requirement_constrained: bool = False,
) -> Optional[BaseVersion]:
    """Latest correct, non-ignored candidate; pre-releases only when already on one."""
    version_class = version_class_for(dependency.package_manager)
    current = None
    if dependency.version and version_class.correct(dependency.version):
        current = version_class(dependency.version)
    include_prereleases = allow_prereleases or bool(current and current.prerelease)

    requirement_groups = []
    if requirement_constrained:
        requirement_class = requirement_class_for(dependency.package_manager)
        requirement_groups = [
            requirement_class.requirements_array(r.requirement)
            for r in dependency.requirements
            if r.requirement
        ]

    ignored = list(ignored_versions)
    candidates = []
    for raw in available_versions:
        if not version_class.correct(raw):
            continue
        version = version_class(raw)
        if version.prerelease and not include_prereleases:
            continue
        if _is_ignored(version, dependency.package_manager, ignored):
            continue
        if any(not any(r.satisfied_by(version) for r in group) for group in requirement_groups):
            continue
        candidates.append(version)
    return max(candidates) if candidates else None


def target_version(
    dependency: Dependency,
    available_versions: Optional[Iterable[str]] = None,
    git_checker: Optional[GitCommitChecker] = None,
    ignored_versions: Iterable[str] = (),
    allow_prereleases: bool = False,
    requirement_constrained: bool = False,
) -> Resolution:
    """Decide what ``dependency`` should be updated to."""
    source = classify(dependency)
    if isinstance(source, GitSource):
        resolution = _git_target(dependency, source, git_checker)
    elif isinstance(source, PathSource):
        resolution = Resolution.undetermined("path dependencies are not versioned")
    elif available_versions is None:
        resolution = Resolution.undetermined("no registry versions available")
    else:
        resolution = _registry_target(
            dependency, available_versions, ignored_versions, allow_prereleases,
            requirement_constrained,
        )

    log_resolution(dependency.name, source.type, resolution.outcome.value, resolution.target)
    return resolution


def _registry_target(
    dependency: Dependency,
    available_versions: Iterable[str],
    ignored_versions: Iterable[str],
    allow_prereleases: bool,
    requirement_constrained: bool,
) -> Resolution:
    version_class = version_class_for(dependency.package_manager)
    if dependency.version and not version_class.correct(dependency.version):
        return Resolution.undetermined(f"current version {dependency.version!r} is not comparable")

    latest = latest_registry_version(
        dependency, available_versions, ignored_versions, allow_prereleases, requirement_constrained
    )
    if latest is None:
        return Resolution.undetermined("no candidate versions")
    if dependency.version is None or latest > version_class(dependency.version):
        return Resolution.update_needed(str(latest))
    return Resolution.no_update_needed("already on the latest version")


def _git_target(
    dependency: Dependency, source: GitSource, git_checker: Optional[GitCommitChecker]
) -> Resolution:
    if source.pinned_to_commit and not source.tracks_branch:
        return Resolution.no_update_needed("pinned to a commit")
    if git_checker is None:
        return Resolution.undetermined("no git remote available")

    if source.tracks_branch or (source.ref is None and dependency.package_manager == "submodules"):
        head = git_checker.head_commit_for_branch(source.branch)
        if head is None:
            return Resolution.undetermined(f"branch {source.branch!r} not found")
        if dependency.version and head.lower() == dependency.version.lower():
            return Resolution.no_update_needed("branch head unchanged")
        return Resolution.update_needed(head)

    current_tag = normalize_version_string(re.sub(r"^.*/", "", source.ref or ""))
    version_class = version_class_for(dependency.package_manager)
    if not version_class.correct(current_tag):
        return Resolution.no_update_needed("ref is not a version tag")

    latest = git_checker.latest_version_tag(dependency.package_manager)
    if latest is None:
        return Resolution.undetermined("no version tags on the remote")
    latest_version = version_class(normalize_version_string(re.sub(r"^.*/", "", latest.name)))
    if latest_version > version_class(current_tag):
        return Resolution.update_needed(latest.name)
    return Resolution.no_update_needed("already on the latest tag")
