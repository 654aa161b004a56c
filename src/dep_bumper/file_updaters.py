"""
Per-ecosystem file updaters.

Each updater takes dependencies that already carry their new version and
requirements (with the old ones as ``previous_*``), patches the manifests
and regenerates lockfiles with the ecosystem's own tool inside a
throwaway directory.
"""

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Type

import toml

from .context import UpdateContext
from .dependency import Dependency, DependencyFile
from .exceptions import ContentNotChanged, DependencyFileNotFound, LockfileNotChanged, PathDependencyUnreachable
from .file_patcher import (
    Edit,
    FilePatcher,
    PipfileLockMetadata,
    PipfilePreparer,
    PoetryLockMetadata,
    PyprojectPreparer,
)
from .subprocess_runner import NativeHelpers, SubprocessRunner, command_fingerprint, in_a_temporary_directory


def write_dependency_files(directory: Path, files: Iterable[DependencyFile]) -> None:
    """Write ``files`` below ``directory``, refusing paths that leave it."""
    root = directory.resolve()
    for file in files:
        if file.content is None or file.deleted:
            continue
        target = (root / file.path.lstrip("/")).resolve()
        if root != target and root not in target.parents:
            raise PathDependencyUnreachable([file.path])
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(file.content, encoding="utf-8")


class BaseFileUpdater(ABC):
    """Common plumbing: file lookup, manifest patching and lockfile checks."""

    package_manager = ""
    manifest_patterns: Sequence[str] = ()
    lockfile_names: Sequence[str] = ()
    patches_lock_metadata = False

    def __init__(
        self,
        dependencies: Sequence[Dependency],
        dependency_files: Sequence[DependencyFile],
        context: Optional[UpdateContext] = None,
        runner: Optional[SubprocessRunner] = None,
    ):
        if not dependencies:
            raise ValueError("No dependencies to update")
        self.dependencies = list(dependencies)
        self.dependency_files = list(dependency_files)
        self.context = context or (runner.context if runner else UpdateContext())
        self.runner = runner or SubprocessRunner(self.context)
        self.patcher = FilePatcher()
        self._updated_files: Optional[List[DependencyFile]] = None

    @property
    def dependency(self) -> Dependency:
        return self.dependencies[0]

    def updated_dependency_files(self) -> List[DependencyFile]:
        if self._updated_files is None:
            self._updated_files = self.fetch_updated_dependency_files()
        return self._updated_files

    @abstractmethod
    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        """Return only the files whose content changed."""

    def get_file(self, name: str) -> Optional[DependencyFile]:
        return next((f for f in self.dependency_files if f.name == name), None)

    def manifests(self) -> List[DependencyFile]:
        return [
            f for f in self.dependency_files
            if not f.support_file and any(re.search(p, f.name) for p in self.manifest_patterns)
        ]

    def lockfiles(self) -> List[DependencyFile]:
        return [f for f in self.dependency_files if f.name.split("/")[-1] in self.lockfile_names]

    def file_changed(self, file: DependencyFile) -> bool:
        return any(dep.requirement_changed(file.name) for dep in self.dependencies)

    def edits_for(self, file: DependencyFile) -> List[Edit]:
        edits = []
        for dep in self.dependencies:
            if not dep.requirement_changed(file.name):
                continue
            new = dep.requirement_for(file.name)
            old = dep.previous_requirement_for(file.name)
            if new is None or old is None or new.requirement is None or old.requirement is None:
                continue
            if new.requirement != old.requirement:
                edits.append(Edit(dep.name, old.requirement, new.requirement, file.name))
        return edits

    def updated_manifest(self, file: DependencyFile) -> DependencyFile:
        edits = self.edits_for(file)
        if not edits:
            return file
        return self.patcher.apply(file, edits)

    def updated_manifests(self) -> List[DependencyFile]:
        return [self.updated_manifest(f) for f in self.manifests() if self.file_changed(f)]

    @staticmethod
    def ensure_lockfile_changed(lockfile: DependencyFile, new_content: Optional[str]) -> None:
        if new_content is None or new_content == lockfile.content:
            raise LockfileNotChanged(lockfile.name)

    def _files_with(self, replacements: Sequence[DependencyFile]) -> List[DependencyFile]:
        by_name = {f.name: f for f in replacements}
        return [by_name.get(f.name, f) for f in self.dependency_files]

    def dependency_names(self) -> List[str]:
        return [d.name for d in self.dependencies]


class NpmAndYarnFileUpdater(BaseFileUpdater):
    package_manager = "npm_and_yarn"
    manifest_patterns = (r"(^|/)package\.json$",)
    lockfile_names = ("package-lock.json", "npm-shrinkwrap.json", "yarn.lock")

    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        manifests = self.updated_manifests()
        updated = list(manifests)
        files = self._files_with(manifests)

        for lockfile in self.lockfiles():
            new_content = self._updated_lockfile_content(lockfile, files)
            self.ensure_lockfile_changed(lockfile, new_content)
            updated.append(lockfile.with_content(new_content))
        return updated

    def _lock_command(self, lockfile: DependencyFile) -> List[str]:
        targets = [f"{d.name}@{d.version}" for d in self.dependencies]
        if lockfile.name.endswith("yarn.lock"):
            if self.context.yarn_version(lockfile.content) >= 2:
                return ["yarn", "up", *targets, "--mode=update-lockfile"]
            return ["yarn", "upgrade", *targets, "--ignore-scripts", "--ignore-engines", "--non-interactive"]
        command = ["npm", "install", *targets, "--package-lock-only", "--ignore-scripts"]
        if self.context.npm_version(lockfile.content) >= 7:
            command += ["--no-audit", "--no-fund"]
        return command

    def _updated_lockfile_content(self, lockfile: DependencyFile, files: List[DependencyFile]) -> str:
        command = self._lock_command(lockfile)
        env = {
            "npm_config_cache": str(self.context.package_cache_path("npm")),
            "YARN_CACHE_FOLDER": str(self.context.package_cache_path("yarn")),
            "YARN_ENABLE_SCRIPTS": "false",
        }
        with in_a_temporary_directory(self.context.tmp_root) as directory:
            write_dependency_files(directory, files)
            work_dir = directory / lockfile.directory.strip("/")
            self.runner.run(
                command, cwd=work_dir, env_overrides=env,
                fingerprint=command_fingerprint(
                    command,
                    self.context.secrets(),
                    self.dependency_names() if self.context.config.security.redact_dependency_names else (),
                ),
            )
            return (directory / lockfile.path.lstrip("/")).read_text(encoding="utf-8")


class PoetryFileUpdater(BaseFileUpdater):
    """pyproject.toml plus poetry.lock."""

    package_manager = "pip"
    patches_lock_metadata = True
    manifest_patterns = (r"(^|/)pyproject\.toml$",)
    lockfile_names = ("poetry.lock",)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.helpers = NativeHelpers(self.runner)

    @property
    def pyproject(self) -> DependencyFile:
        pyproject = self.get_file("pyproject.toml")
        if pyproject is None:
            raise DependencyFileNotFound("pyproject.toml")
        return pyproject

    @property
    def lockfile(self) -> Optional[DependencyFile]:
        return self.get_file("poetry.lock")

    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        updated = []
        pyproject = self.pyproject
        updated_pyproject = self.updated_manifest(pyproject) if self.file_changed(pyproject) else pyproject
        if updated_pyproject.content != pyproject.content:
            updated.append(updated_pyproject)

        lockfile = self.lockfile
        if lockfile:
            new_lockfile = self._updated_lockfile_content(updated_pyproject.content, lockfile)
            self.ensure_lockfile_changed(lockfile, new_lockfile)
            updated.append(lockfile.with_content(new_lockfile))
        return updated

    def _python_requirement(self) -> Optional[str]:
        python_version = self.get_file(".python-version")
        if python_version and python_version.content and python_version.content.strip():
            return python_version.content.strip()
        return None

    def prepared_pyproject(self, pyproject_content: str, lockfile: DependencyFile) -> str:
        preparer = PyprojectPreparer(pyproject_content, lockfile.content)
        content = preparer.sanitize(pyproject_content)
        content = PyprojectPreparer(content, lockfile.content).freeze_top_level_dependencies_except(
            self.dependency_names()
        )
        content = PyprojectPreparer(content).lock_dependency_versions(
            {d.name: d.version for d in self.dependencies if d.version}
        )
        content = PyprojectPreparer(content).update_python_requirement(self._python_requirement())
        return PyprojectPreparer(content).replace_sources(self.context.credentials_of_type("python_index"))

    def _updated_lockfile_content(self, pyproject_content: str, lockfile: DependencyFile) -> str:
        prepared = self.prepared_pyproject(pyproject_content, lockfile)
        names = " ".join(self.dependency_names())
        with in_a_temporary_directory(self.context.tmp_root) as directory:
            write_dependency_files(directory, self.dependency_files)
            work_dir = directory / self.pyproject.directory.strip("/")
            (work_dir / "pyproject.toml").write_text(prepared, encoding="utf-8")
            # --lock avoids an install, --no-interaction avoids password prompts
            self.runner.run(
                f"poetry update {names} --lock --no-interaction",
                cwd=work_dir,
                env_overrides={"POETRY_CACHE_DIR": str(self.context.package_cache_path("poetry"))},
                fingerprint="poetry update <dependency_name> --lock --no-interaction",
            )
            new_lockfile = (work_dir / "poetry.lock").read_text(encoding="utf-8")

        return PoetryLockMetadata.correct(
            new_lockfile, lockfile.content or "", self._pyproject_hash(pyproject_content)
        )

    def _pyproject_hash(self, pyproject_content: str) -> str:
        with in_a_temporary_directory(self.context.tmp_root) as directory:
            (directory / "pyproject.toml").write_text(pyproject_content, encoding="utf-8")
            return self.helpers.get_pyproject_hash(directory)


class PipenvFileUpdater(BaseFileUpdater):
    """Pipfile plus Pipfile.lock."""

    package_manager = "pip"
    patches_lock_metadata = True
    manifest_patterns = (r"(^|/)Pipfile$",)
    lockfile_names = ("Pipfile.lock",)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.helpers = NativeHelpers(self.runner)

    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        pipfile = self.get_file("Pipfile")
        if pipfile is None:
            raise DependencyFileNotFound("Pipfile")
        updated = []
        updated_pipfile = self.updated_manifest(pipfile) if self.file_changed(pipfile) else pipfile
        if updated_pipfile.content != pipfile.content:
            updated.append(updated_pipfile)

        lockfile = self.get_file("Pipfile.lock")
        if lockfile:
            new_lockfile = self._updated_lockfile_content(updated_pipfile.content, lockfile)
            self.ensure_lockfile_changed(lockfile, new_lockfile)
            updated.append(lockfile.with_content(new_lockfile))
        return updated

    def prepared_pipfile(self, pipfile_content: str, lockfile: DependencyFile) -> str:
        content = PipfilePreparer(pipfile_content, lockfile.content).freeze_top_level_dependencies_except(
            self.dependency_names()
        )
        content = PipfilePreparer(content).update_python_requirement(None)
        return PipfilePreparer(content).replace_sources(self.context.credentials_of_type("python_index"))

    def _updated_lockfile_content(self, pipfile_content: str, lockfile: DependencyFile) -> str:
        prepared = self.prepared_pipfile(pipfile_content, lockfile)
        with in_a_temporary_directory(self.context.tmp_root) as directory:
            write_dependency_files(directory, self.dependency_files)
            work_dir = directory / lockfile.directory.strip("/")
            (work_dir / "Pipfile").write_text(prepared, encoding="utf-8")
            self.runner.run(
                "pipenv lock",
                cwd=work_dir,
                env_overrides={
                    "PIPENV_YES": "true",
                    "PIPENV_NOSPIN": "1",
                    "PIPENV_MAX_RETRIES": "3",
                    "PIPENV_CACHE_DIR": str(self.context.package_cache_path("pipenv")),
                },
                fingerprint="pipenv lock",
            )
            new_lockfile = (work_dir / "Pipfile.lock").read_text(encoding="utf-8")

            # the hash must describe the real Pipfile, not the frozen one
            (work_dir / "Pipfile").write_text(pipfile_content, encoding="utf-8")
            correct_hash = self.helpers.get_pipfile_hash(work_dir)
        return PipfileLockMetadata.replace_hash(new_lockfile, correct_hash)


class RequirementsFileUpdater(BaseFileUpdater):
    """requirements.txt style files; no lockfile to regenerate."""

    package_manager = "pip"
    manifest_patterns = (r"\.(txt|in)$",)

    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        updated = self.updated_manifests()
        if not updated:
            raise ContentNotChanged(
                ", ".join(f.name for f in self.manifests()) or "requirements", self.dependency_names()
            )
        return updated


class GoModFileUpdater(BaseFileUpdater):
    package_manager = "go_modules"
    manifest_patterns = (r"(^|/)go\.mod$",)
    lockfile_names = ("go.sum",)

    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        go_mod = self.get_file("go.mod")
        if go_mod is None:
            raise DependencyFileNotFound("go.mod")
        patched = self.updated_manifest(go_mod) if self.file_changed(go_mod) else go_mod

        files = self._files_with([patched])
        env = {
            "GOMODCACHE": str(self.context.package_cache_path("go")),
            "GOFLAGS": "-mod=mod",
            "GOTOOLCHAIN": "local",
        }
        go_sum = self.get_file("go.sum")
        with in_a_temporary_directory(self.context.tmp_root) as directory:
            write_dependency_files(directory, files)
            work_dir = directory / go_mod.directory.strip("/")
            for dep in self.dependencies:
                self.runner.run(
                    ["go", "get", f"{dep.name}@{dep.version}"], cwd=work_dir, env_overrides=env,
                    fingerprint="go get <dependency_name>",
                )
            self.runner.run(["go", "mod", "tidy", "-e"], cwd=work_dir, env_overrides=env,
                            fingerprint="go mod tidy -e")
            new_go_mod = (work_dir / "go.mod").read_text(encoding="utf-8")
            go_sum_path = work_dir / "go.sum"
            new_go_sum = go_sum_path.read_text(encoding="utf-8") if go_sum_path.exists() else None

        updated = []
        if new_go_mod != go_mod.content:
            updated.append(go_mod.with_content(new_go_mod))
        if go_sum is not None:
            self.ensure_lockfile_changed(go_sum, new_go_sum)
            updated.append(go_sum.with_content(new_go_sum))
        if not updated:
            raise ContentNotChanged(go_mod.name, self.dependency_names())
        return updated


class BundlerFileUpdater(BaseFileUpdater):
    package_manager = "bundler"
    manifest_patterns = (r"(^|/)(Gemfile|gems\.rb)$", r"\.gemspec$")
    lockfile_names = ("Gemfile.lock", "gems.locked")
    BUNDLED_WITH = re.compile(r"BUNDLED WITH\s+(?P<version>\d+)")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.helpers = NativeHelpers(self.runner)

    def bundler_major_version(self, lockfile: Optional[DependencyFile]) -> int:
        if lockfile and lockfile.content:
            match = self.BUNDLED_WITH.search(lockfile.content)
            if match:
                return int(match.group("version"))
        return 2

    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        manifests = self.updated_manifests()
        updated = list(manifests)
        files = self._files_with(manifests)

        for lockfile in self.lockfiles():
            gemfile = next((f for f in files if f.name in ("Gemfile", "gems.rb")), None)
            with in_a_temporary_directory(self.context.tmp_root) as directory:
                write_dependency_files(directory, files)
                new_content = self.helpers.run_bundler_subprocess(
                    "update_lockfile",
                    {
                        "dir": str(directory),
                        "gemfile_name": gemfile.name if gemfile else "Gemfile",
                        "lockfile_name": lockfile.name,
                        "dependency_names": self.dependency_names(),
                        "credentials": [
                            {"type": c.type, "host": c.host, "token": c.token}
                            for c in self.context.credentials
                        ],
                    },
                    self.bundler_major_version(lockfile),
                )
            self.ensure_lockfile_changed(lockfile, new_content)
            updated.append(lockfile.with_content(new_content))
        return updated


class NugetFileUpdater(BaseFileUpdater):
    package_manager = "nuget"
    manifest_patterns = (r"(?i)(^|/)packages\.config$",)

    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        updated = self.updated_manifests()
        if not updated:
            raise ContentNotChanged("packages.config", self.dependency_names())
        return updated


class SubmodulesFileUpdater(BaseFileUpdater):
    """The gitlink of a submodule holds the pinned commit SHA."""

    package_manager = "submodules"

    def fetch_updated_dependency_files(self) -> List[DependencyFile]:
        updated = []
        for dep in self.dependencies:
            gitlink = self.get_file(dep.name)
            if gitlink is None:
                raise DependencyFileNotFound(dep.name)
            if gitlink.content and gitlink.content.strip() == (dep.version or ""):
                raise ContentNotChanged(gitlink.name, [dep.name])
            updated.append(gitlink.with_content(dep.version))
        return updated


FILE_UPDATERS: Dict[str, Type[BaseFileUpdater]] = {
    "npm_and_yarn": NpmAndYarnFileUpdater,
    "go_modules": GoModFileUpdater,
    "bundler": BundlerFileUpdater,
    "nuget": NugetFileUpdater,
    "submodules": SubmodulesFileUpdater,
}


def register_file_updater(package_manager: str, updater_class: Type[BaseFileUpdater]) -> None:
    FILE_UPDATERS[package_manager] = updater_class


def _python_updater_class(dependency_files: Sequence[DependencyFile]) -> Type[BaseFileUpdater]:
    names = {f.name for f in dependency_files}
    if "pyproject.toml" in names:
        pyproject = next(f for f in dependency_files if f.name == "pyproject.toml")
        try:
            is_poetry = "poetry" in toml.loads(pyproject.content or "").get("tool", {})
        except toml.TomlDecodeError:
            is_poetry = False
        if is_poetry or "poetry.lock" in names:
            return PoetryFileUpdater
    if "Pipfile" in names:
        return PipenvFileUpdater
    return RequirementsFileUpdater


def file_updater_class_for(
    package_manager: str, dependency_files: Sequence[DependencyFile]
) -> Type[BaseFileUpdater]:
    if package_manager == "pip":
        return _python_updater_class(dependency_files)
    try:
        return FILE_UPDATERS[package_manager]
    except KeyError:
        raise ValueError(f"No file updater for package manager: {package_manager}")

