"""
Update orchestration.

Drives one dependency through source classification, target resolution,
requirement rewriting, file updating and validation, recording every
state it passes through. ``update_all`` runs a batch where one failing
dependency does not stop its siblings unless the error halts the job.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Type, Union

from .context import UpdateContext
from .dependency import Dependency, DependencyFile, UpdatedDependency
from .error_handling import ErrorHandler, ErrorRecord, get_error_handler
from .exceptions import ContentNotChanged, LockfileNotChanged
from .file_updaters import BaseFileUpdater, file_updater_class_for
from .requirements import RequirementUpdater, UpdateStrategy
from .source_resolver import (
    GitCommitChecker,
    GitSource,
    Resolution,
    ResolutionOutcome,
    SourceDescriptor,
    classify,
    target_version,
)
from .structured_logging import log_state_transition, log_update_complete, log_update_start
from .subprocess_runner import SubprocessRunner

FileUpdaterLookup = Callable[[str, Sequence[DependencyFile]], Type[BaseFileUpdater]]


class UpdateState(Enum):
    START = "start"
    RESOLVE_SOURCE = "resolve_source"
    RESOLVE_TARGET_VERSION = "resolve_target_version"
    NO_UPDATE_NEEDED = "no_update_needed"
    PREPARE_SANDBOX = "prepare_sandbox"
    WRITE_MANIFESTS = "write_manifests"
    INVOKE_NATIVE_TOOL = "invoke_native_tool"
    PATCH_LOCK_METADATA = "patch_lock_metadata"
    VALIDATE = "validate"
    DONE = "done"
    FAILED = "failed"


class UpdateStatus(Enum):
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    UNDETERMINED = "undetermined"
    FAILED = "failed"


@dataclass
class UpdateRequest:
    """One dependency to update, with whatever is known about its candidates."""

    dependency: Dependency
    dependency_files: Sequence[DependencyFile]
    available_versions: Optional[Sequence[str]] = None
    target_version: Optional[str] = None
    git_checker: Optional[GitCommitChecker] = None
    ignored_versions: Sequence[str] = ()
    allow_prereleases: Optional[bool] = None
    strategy: Optional[Union[UpdateStrategy, str]] = None


@dataclass
class UpdateOutcome:
    dependency_name: str
    status: UpdateStatus
    updated_dependency: Optional[UpdatedDependency] = None
    error_record: Optional[ErrorRecord] = None
    resolution: Optional[Resolution] = None
    states: List[UpdateState] = field(default_factory=list)

    @property
    def updated(self) -> bool:
        return self.status is UpdateStatus.UPDATED

    def to_dict(self):
        return {
            "dependency": self.dependency_name,
            "status": self.status.value,
            "updated_dependency": self.updated_dependency.to_dict() if self.updated_dependency else None,
            "error": self.error_record.to_dict() if self.error_record else None,
            "states": [s.value for s in self.states],
        }


class _StateTrail:
    def __init__(self):
        self.states = [UpdateState.START]

    def enter(self, state: UpdateState) -> None:
        log_state_transition(self.states[-1].value, state.value)
        self.states.append(state)


class UpdateOrchestrator:
    """Runs dependency updates for one job."""

    def __init__(
        self,
        context: Optional[UpdateContext] = None,
        file_updaters: FileUpdaterLookup = file_updater_class_for,
        runner: Optional[SubprocessRunner] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.context = context or (runner.context if runner else UpdateContext())
        self.runner = runner or SubprocessRunner(self.context)
        self.file_updaters = file_updaters
        self.error_handler = error_handler or get_error_handler()

    def update(self, request: UpdateRequest) -> UpdateOutcome:
        """
        Update a single dependency.

        Per-dependency errors end in a FAILED outcome carrying the error
        record.

        Raises:
            ResourceExhausted: out of disk or memory; the job must stop
        """
        dependency = request.dependency
        trail = _StateTrail()
        start = time.monotonic()
        log_update_start(self.context.job_id, dependency.name, dependency.package_manager)

        try:
            trail.enter(UpdateState.RESOLVE_SOURCE)
            source = classify(dependency)

            trail.enter(UpdateState.RESOLVE_TARGET_VERSION)
            resolution = self.resolve(request, source)
            if not resolution.update_required:
                trail.enter(UpdateState.NO_UPDATE_NEEDED)
                status = (
                    UpdateStatus.UNDETERMINED
                    if resolution.outcome is ResolutionOutcome.UNDETERMINED
                    else UpdateStatus.UP_TO_DATE
                )
                log_update_complete(dependency.name, status.value, self._elapsed_ms(start))
                return UpdateOutcome(dependency.name, status, resolution=resolution, states=trail.states)

            trail.enter(UpdateState.PREPARE_SANDBOX)
            updated = self.updated_dependency(dependency, resolution.target, source, request.strategy)
            updater_class = self.file_updaters(dependency.package_manager, request.dependency_files)
            updater = updater_class([updated], request.dependency_files, self.context, self.runner)

            trail.enter(UpdateState.WRITE_MANIFESTS)
            if updater.lockfiles():
                trail.enter(UpdateState.INVOKE_NATIVE_TOOL)
            updated_files = updater.updated_dependency_files()
            if updater.patches_lock_metadata and updater.lockfiles():
                trail.enter(UpdateState.PATCH_LOCK_METADATA)

            trail.enter(UpdateState.VALIDATE)
            self.validate(updater, updated_files)
        except Exception as e:
            trail.enter(UpdateState.FAILED)
            log_update_complete(dependency.name, UpdateStatus.FAILED.value, self._elapsed_ms(start))
            record = self.error_handler.handle_dependency_error(e, dependency.name)
            return UpdateOutcome(
                dependency.name, UpdateStatus.FAILED, error_record=record, states=trail.states
            )

        trail.enter(UpdateState.DONE)
        log_update_complete(
            dependency.name,
            UpdateStatus.UPDATED.value,
            self._elapsed_ms(start),
            previous_version=dependency.version,
            new_version=updated.version,
            updated_files=len(updated_files),
        )
        return UpdateOutcome(
            dependency.name,
            UpdateStatus.UPDATED,
            updated_dependency=UpdatedDependency(
                name=updated.name,
                package_manager=updated.package_manager,
                previous_version=updated.previous_version,
                new_version=updated.version,
                previous_requirements=tuple(updated.previous_requirements or ()),
                new_requirements=tuple(updated.requirements),
                updated_files=tuple(updated_files),
            ),
            resolution=resolution,
            states=trail.states,
        )

    def update_all(self, requests: Sequence[UpdateRequest]) -> List[UpdateOutcome]:
        """Update every request in order; job-halting errors propagate."""
        return [self.update(request) for request in requests]

    def resolve(self, request: UpdateRequest, source: SourceDescriptor) -> Resolution:
        if request.target_version:
            return Resolution.update_needed(request.target_version)

        update_config = self.context.config.update
        ignored = list(request.ignored_versions) + list(
            update_config.ignored_versions.get(request.dependency.name, [])
        )
        allow_prereleases = (
            update_config.allow_prereleases
            if request.allow_prereleases is None
            else request.allow_prereleases
        )
        git_checker = request.git_checker
        if git_checker is None and isinstance(source, GitSource) and source.url:
            git_checker = GitCommitChecker(source.url, self.runner, self.context.credentials)

        return target_version(
            request.dependency,
            available_versions=request.available_versions,
            git_checker=git_checker,
            ignored_versions=ignored,
            allow_prereleases=allow_prereleases,
        )

    def updated_dependency(
        self,
        dependency: Dependency,
        target: str,
        source: SourceDescriptor,
        strategy: Optional[Union[UpdateStrategy, str]] = None,
    ) -> Dependency:
        """The dependency as it will look after the update, with its old state as ``previous_*``."""
        if isinstance(source, GitSource):
            if source.tracks_branch or dependency.package_manager == "submodules":
                return dependency.with_update(target, dependency.requirements)
            requirements = tuple(
                r.with_source({**r.source, "ref": target}) if r.source_type == "git" else r
                for r in dependency.requirements
            )
            return dependency.with_update(target, requirements)

        requirement_updater = RequirementUpdater(
            dependency.package_manager,
            strategy or self.context.config.update.versioning_strategy,
        )
        requirements = tuple(
            r.with_requirement(requirement_updater.updated_requirement(r.requirement, target))
            for r in dependency.requirements
        )
        return dependency.with_update(target, requirements)

    @staticmethod
    def validate(updater: BaseFileUpdater, updated_files: Sequence[DependencyFile]) -> None:
        """
        Raises:
            ContentNotChanged: the updater produced no changed files
            LockfileNotChanged: a lockfile was not regenerated
        """
        if not updated_files:
            raise ContentNotChanged(
                ", ".join(f.name for f in updater.dependency_files), updater.dependency_names()
            )
        updated_by_name = {f.name: f for f in updated_files}
        for lockfile in updater.lockfiles():
            updated = updated_by_name.get(lockfile.name)
            if updated is None or updated.content == lockfile.content:
                raise LockfileNotChanged(lockfile.name)

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
