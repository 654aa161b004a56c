from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class DependencyRequirement:
    """One declaration of a dependency in one manifest file."""

    file: str
    requirement: Optional[str]
    groups: Tuple[str, ...] = ()
    source: Optional[Mapping[str, Any]] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def source_type(self) -> Optional[str]:
        if not self.source:
            return None
        return self.source.get("type")

    def with_requirement(self, requirement: Optional[str]) -> "DependencyRequirement":
        return replace(self, requirement=requirement)

    def with_source(self, source: Optional[Mapping[str, Any]]) -> "DependencyRequirement":
        return replace(self, source=source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.file,
            "requirement": self.requirement,
            "groups": list(self.groups),
            "source": dict(self.source) if self.source else None,
        }


@dataclass(frozen=True)
class Dependency:
    """A dependency as parsed from a repository, plus its update state."""

    name: str
    package_manager: str
    version: Optional[str] = None
    requirements: Tuple[DependencyRequirement, ...] = ()
    previous_version: Optional[str] = None
    previous_requirements: Optional[Tuple[DependencyRequirement, ...]] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def requirement_for(self, file_name: str) -> Optional[DependencyRequirement]:
        return next((r for r in self.requirements if r.file == file_name), None)

    def previous_requirement_for(self, file_name: str) -> Optional[DependencyRequirement]:
        return next(
            (r for r in self.previous_requirements or () if r.file == file_name), None
        )

    def changed_requirements(self) -> List[DependencyRequirement]:
        previous = list(self.previous_requirements or ())
        return [r for r in self.requirements if r not in previous]

    def requirement_changed(self, file_name: str) -> bool:
        return any(r.file == file_name for r in self.changed_requirements())

    @property
    def top_level(self) -> bool:
        return bool(self.requirements)

    @property
    def production(self) -> bool:
        groups = [g for r in self.requirements for g in r.groups]
        if not groups:
            return True
        return any(g not in ("devDependencies", "dev-dependencies", "develop", "dev") for g in groups)

    def with_update(
        self, new_version: Optional[str], new_requirements: Tuple[DependencyRequirement, ...]
    ) -> "Dependency":
        """Return the updated copy; this dependency becomes its previous state."""
        return replace(
            self,
            version=new_version,
            requirements=tuple(new_requirements),
            previous_version=self.version,
            previous_requirements=self.requirements,
        )


@dataclass(frozen=True)
class DependencyFile:
    """A manifest, lockfile or support file and its raw content."""

    name: str
    content: Optional[str]
    directory: str = "/"
    support_file: bool = False
    deleted: bool = False

    @property
    def path(self) -> str:
        directory = self.directory.rstrip("/")
        return f"{directory}/{self.name}" if directory else f"/{self.name}"

    def with_content(self, content: Optional[str]) -> "DependencyFile":
        return replace(self, content=content)


@dataclass(frozen=True)
class UpdatedDependency:
    """Record handed to the pull request layer after a successful update."""

    name: str
    package_manager: str
    previous_version: Optional[str]
    new_version: Optional[str]
    previous_requirements: Tuple[DependencyRequirement, ...]
    new_requirements: Tuple[DependencyRequirement, ...]
    updated_files: Tuple[DependencyFile, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "package_manager": self.package_manager,
            "previous_version": self.previous_version,
            "new_version": self.new_version,
            "previous_requirements": [r.to_dict() for r in self.previous_requirements],
            "new_requirements": [r.to_dict() for r in self.new_requirements],
            "updated_files": [f.path for f in self.updated_files],
        }
