"""
Version constraint parsing, satisfaction and rewriting.

A requirement is a set of ``(operator, version)`` clauses that are ANDed
together. OR groups (``||``) are represented as a list of requirements.
Each ecosystem desugars its shorthand (caret, tilde, wildcards, hyphen
ranges, intervals) into those generic clauses before parsing.
"""

import re
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Type, Union

from packaging.specifiers import InvalidSpecifier, SpecifierSet

from .exceptions import BadRequirement, InvalidVersion
from .versions import (
    BaseVersion,
    GemVersion,
    GoVersion,
    NugetVersion,
    PythonVersion,
    SemverVersion,
    normalize_version_string,
)

Clause = Tuple[str, BaseVersion]
VersionLike = Union[str, BaseVersion]

WILDCARD_REGEX = re.compile(r"(?:\.|^)[xX*]")
OR_SEPARATOR = re.compile(r"(?<=[a-zA-Z0-9*])\s*\|{2}")

OPS: Dict[str, Callable[[BaseVersion, BaseVersion], bool]] = {
    "=": lambda v, r: v == r,
    "!=": lambda v, r: v != r,
    ">": lambda v, r: v > r,
    "<": lambda v, r: v < r,
    ">=": lambda v, r: v >= r,
    "<=": lambda v, r: v <= r,
    "~>": lambda v, r: v >= r and v.release() < r.bump(),
}

_CLAUSE_PATTERN = re.compile(r"\A\s*(~>|!=|>=|<=|=|>|<)?\s*(\S+)\s*\Z")


def _split_outside(raw: str, separator: str) -> List[str]:
    return [part.strip() for part in raw.split(separator) if part.strip()]


class Requirement:
    """
    Gem-style requirement: comma separated clauses such as ``~> 1.2, >= 1.2.3``.

    Subclasses set ``version_class`` and override ``convert`` to desugar
    their ecosystem's shorthand into generic clauses.
    """

    version_class: Type[BaseVersion] = GemVersion
    package_manager = "bundler"

    def __init__(self, *requirement_strings: Optional[str]):
        clauses: List[Clause] = []
        raw_parts: List[str] = []
        for raw in requirement_strings:
            if raw is None:
                continue
            if not isinstance(raw, str):
                raise BadRequirement(raw, "requirement must be a string")
            raw_parts.append(raw.strip())
            for part in self.split_clauses(raw):
                for converted in self._converted(raw, part):
                    clauses.append(self.parse_clause(converted))

        if not clauses:
            clauses = [(">=", self.version_class("0"))]
        self.requirements: Tuple[Clause, ...] = tuple(clauses)
        self._raw = ", ".join(p for p in raw_parts if p) or ">= 0"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "Requirement":
        return cls(raw)

    @classmethod
    def parse_clause(cls, raw: str) -> Clause:
        match = _CLAUSE_PATTERN.match(raw)
        if not match or not cls.version_class.correct(match.group(2)):
            raise BadRequirement(raw)
        return match.group(1) or "=", cls.version_class(match.group(2))

    @classmethod
    def requirements_array(cls, raw: Optional[str]) -> List["Requirement"]:
        """Split OR groups; at least one returned requirement must be satisfied."""
        if raw is None:
            return [cls(None)]
        return [cls(group) for group in OR_SEPARATOR.split(raw.strip())]

    def split_clauses(self, raw: str) -> List[str]:
        return _split_outside(raw, ",")

    def convert(self, clause: str) -> List[str]:
        return [clause]

    def _converted(self, raw: str, clause: str) -> List[str]:
        try:
            return self.convert(clause)
        except BadRequirement:
            raise
        except (ValueError, AttributeError) as e:
            raise BadRequirement(raw, str(e))

    def _coerce(self, version: VersionLike) -> BaseVersion:
        if isinstance(version, self.version_class):
            return version
        return self.version_class(str(version))

    def satisfied_by(self, version: VersionLike) -> bool:
        candidate = self._coerce(version)
        return all(OPS[op](candidate, bound) for op, bound in self.requirements)

    @property
    def exact(self) -> bool:
        return len(self.requirements) == 1 and self.requirements[0][0] == "="

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Requirement):
            return NotImplemented
        return type(self) is type(other) and sorted(
            (op, str(v)) for op, v in self.requirements
        ) == sorted((op, str(v)) for op, v in other.requirements)

    def __hash__(self) -> int:
        return hash((type(self).__name__, tuple(sorted((op, str(v)) for op, v in self.requirements))))

    def __str__(self) -> str:
        return self._raw

    def __repr__(self) -> str:
        clauses = ", ".join(f"{op} {v}" for op, v in self.requirements)
        return f"#<{type(self).__name__} {clauses}>"


class GemRequirement(Requirement):
    """Bundler requirements."""


class NpmRequirement(Requirement):
    """
    node-semver ranges.

    Clauses are separated by whitespace (optionally ``&&``); caret, tilde,
    x-ranges and hyphen ranges are desugared the way node-semver reads them.
    """

    version_class = SemverVersion
    package_manager = "npm_and_yarn"
    AND_SEPARATOR = re.compile(r"(?<=[a-zA-Z0-9*])\s+(?:&+\s+)?(?!\s*[|-])")

    def split_clauses(self, raw: str) -> List[str]:
        parts: List[str] = []
        for chunk in _split_outside(raw, ","):
            parts.extend(p.strip() for p in self.AND_SEPARATOR.split(chunk) if p.strip())
        return parts

    def convert(self, clause: str) -> List[str]:
        if re.match(r"^([A-Za-uw-z]|v[^\d])", clause):
            # dist-tags such as "latest" are not ranges
            raise BadRequirement(clause, "dist-tags cannot be compared")

        clause = WILDCARD_REGEX.sub("", clause)
        if not clause:
            return [">= 0"]
        if clause.startswith("~>"):
            return [clause]
        if clause.startswith("="):
            return [clause.lstrip("=")]
        if clause.startswith("~"):
            return [self._tilde(clause)]
        if clause.startswith("^"):
            return self._caret(clause)
        if " - " in clause:
            return self._hyphen(clause)
        if re.search(r"[<>]", clause):
            return [clause]
        return [self._range(clause)]

    @staticmethod
    def _tilde(clause: str) -> str:
        version = normalize_version_string(re.sub(r"^~>?[\s=]*", "", clause))
        parts = version.split(".")
        if len(parts) < 3:
            parts.append("0")
        return "~> " + ".".join(parts)

    @staticmethod
    def _caret(clause: str) -> List[str]:
        version = normalize_version_string(re.sub(r"^\^[\s=]*", "", clause))
        parts = version.split("-", 1)[0].split(".")
        parts += ["x"] * (3 - len(parts))

        first_non_zero = next((p for p in parts if p != "0"), None)
        index = parts.index(first_non_zero) if first_non_zero else len(parts) - 1
        # a blank minor or patch bumps the component before it
        if first_non_zero == "x":
            index -= 1

        upper: List[str] = []
        for i, part in enumerate(parts):
            if i < index:
                upper.append(part)
            elif i == index:
                upper.append(str(int(part) + 1))
            elif i == 2:
                upper.append("0.a")
            else:
                upper.append("0")
        return [f">= {version}", "< " + ".".join(upper)]

    @staticmethod
    def _hyphen(clause: str) -> List[str]:
        lower, upper = re.split(r"\s+-\s+", clause, maxsplit=1)
        lower_parts = lower.split(".")
        lower_parts += ["0"] * (3 - len(lower_parts))
        upper_parts = upper.split(".")
        if len(upper_parts) < 3:
            # a partial upper bound is an x-range
            if int(upper_parts[-1]) > 0:
                upper_parts[-1] = str(int(upper_parts[-1]) + 1)
            upper_parts += ["0"] * (3 - len(upper_parts))
            upper_bound = "< " + ".".join(upper_parts) + ".a"
        else:
            upper_bound = "<= " + ".".join(upper_parts)
        return [">= " + ".".join(lower_parts), upper_bound]

    @staticmethod
    def _range(clause: str) -> str:
        parts = clause.split(".")
        if len(parts) >= 3:
            return clause
        parts.append("0")
        return "~> " + ".".join(parts)

    def satisfied_by(self, version: VersionLike) -> bool:
        candidate = self._coerce(version)
        if candidate.prerelease and not self._allows_prerelease_of(candidate):
            return False
        return super().satisfied_by(candidate)

    def _allows_prerelease_of(self, candidate: BaseVersion) -> bool:
        """A pre-release only matches when a clause names a pre-release of the same release."""
        target = _release_tuple(candidate)
        return any(
            bound.prerelease and _release_tuple(bound) == target for _, bound in self.requirements
        )


def _release_tuple(version: BaseVersion) -> Tuple[int, ...]:
    parts = list(version.release_segments()[:3])
    return tuple(parts + [0] * (3 - len(parts)))


class GoRequirement(Requirement):
    """
    Go module constraints (Masterminds semver).

    Unlike node-semver, a caret always bumps the major version and a bare
    version is read as a caret constraint.
    """

    version_class = GoVersion
    package_manager = "go_modules"

    def convert(self, clause: str) -> List[str]:
        clause = self._convert_wildcards(clause)
        if WILDCARD_REGEX.search(clause):
            prefix = re.sub(r"^[^\dv]+", "", WILDCARD_REGEX.sub("", clause))
            return [self._range(normalize_version_string(prefix))] if prefix else [">= 0"]
        if re.match(r"^~[^>]", clause):
            return [self._tilde(clause)]
        if " - " in clause:
            lower, upper = re.split(r"\s+-\s+", clause, maxsplit=1)
            return [f">= {lower}", f"<= {upper}"]
        if re.match(r"^[\dv^]", clause):
            return self._caret(clause)
        return [clause]

    @staticmethod
    def _convert_wildcards(clause: str) -> str:
        if clause.startswith("<"):
            parts = clause.split(".")
            converted = []
            for i, part in enumerate(parts):
                if WILDCARD_REGEX.search(part):
                    converted.append("0")
                elif i + 1 < len(parts) and WILDCARD_REGEX.search(parts[i + 1]):
                    prefix, number = re.match(r"^(\D*)(\d+)$", part).groups()
                    converted.append(f"{prefix}{int(number) + 1}")
                else:
                    converted.append(part)
            return ".".join(converted)
        if clause.startswith((">", "~", "^")) and WILDCARD_REGEX.search(clause):
            # the lower bound of a wildcard is its zero-filled prefix
            head = re.split(r"\.[xX*]", clause, maxsplit=1)[0]
            parts = head.split(".")
            if clause.startswith("~"):
                return head
            return ".".join(parts + ["0"] * (3 - len(parts)))
        return clause

    @staticmethod
    def _tilde(clause: str) -> str:
        parts = clause[1:].strip().split(".")
        if len(parts) < 3:
            parts.append("0")
        return "~> " + ".".join(parts)

    @staticmethod
    def _range(clause: str) -> str:
        parts = [p for p in clause.split(".") if p]
        if not parts:
            return ">= 0"
        if len(parts) >= 3:
            return clause
        parts.append("0")
        return "~> " + ".".join(parts)

    @staticmethod
    def _caret(clause: str) -> List[str]:
        version = re.sub(r"^\^?v?", "", clause)
        major = int(re.match(r"\d+", version).group(0))
        return [f">= {version}", f"< {major + 1}.0.0.a"]


class NugetRequirement(Requirement):
    """
    NuGet version ranges.

    A bare version is a minimum (``1.0`` means ``>= 1.0``); interval
    notation (``[1.0,2.0)``) and floating versions (``1.*``) are supported.
    """

    version_class = NugetVersion
    package_manager = "nuget"
    INTERVAL = re.compile(r"\A\s*(?P<open>[\[(])\s*(?P<lower>[^,\])]*?)\s*(?:,\s*(?P<upper>[^\])]*?)\s*)?(?P<close>[\])])\s*\Z")

    def split_clauses(self, raw: str) -> List[str]:
        if self.INTERVAL.match(raw):
            return [raw.strip()]
        return _split_outside(raw, ",")

    def convert(self, clause: str) -> List[str]:
        interval = self.INTERVAL.match(clause)
        if interval:
            return self._interval(clause, interval)
        if clause in ("*", ""):
            return [">= 0"]
        if "*" in clause:
            prefix = clause.split("*", 1)[0].rstrip(".")
            if not prefix:
                return [">= 0"]
            return ["~> " + prefix + ".0"]
        if re.match(r"^[\d]", clause):
            return [f">= {clause}"]
        return [clause]

    @staticmethod
    def _interval(clause: str, interval: "re.Match[str]") -> List[str]:
        lower, upper = interval.group("lower"), interval.group("upper")
        inclusive_lower = interval.group("open") == "["
        inclusive_upper = interval.group("close") == "]"
        if upper is None:
            if not (inclusive_lower and inclusive_upper and lower):
                raise BadRequirement(clause, "single version intervals must be inclusive")
            return [f"= {lower}"]

        clauses = []
        if lower:
            clauses.append((">= " if inclusive_lower else "> ") + lower)
        if upper:
            clauses.append(("<= " if inclusive_upper else "< ") + upper)
        return clauses or [">= 0"]


class PythonRequirement(Requirement):
    """
    PEP 440 specifiers plus poetry's caret and tilde shorthand.

    Satisfaction is decided by ``packaging.specifiers.SpecifierSet``;
    pre-releases are admitted whenever the specifiers admit them.
    """

    version_class = PythonVersion
    package_manager = "pip"
    OR_SEPARATOR = re.compile(r"(?<=[a-zA-Z0-9*])\s*\|{1,2}")
    PEP440_OPS = ("===", "~=", "==", "!=", ">=", "<=", ">", "<")

    def __init__(self, *requirement_strings: Optional[str]):
        specifiers: List[str] = []
        raw_parts: List[str] = []
        for raw in requirement_strings:
            if raw is None:
                continue
            if not isinstance(raw, str):
                raise BadRequirement(raw, "requirement must be a string")
            raw_parts.append(raw.strip())
            for part in self.split_clauses(raw):
                specifiers.extend(self._converted(raw, part))

        try:
            self.specifier_set = SpecifierSet(",".join(specifiers))
        except InvalidSpecifier:
            raise BadRequirement(", ".join(raw_parts), "invalid PEP 440 specifier")

        clauses: List[Tuple[str, Union[BaseVersion, str]]] = []
        for spec in self.specifier_set:
            bound: Union[BaseVersion, str] = spec.version
            if PythonVersion.correct(spec.version):
                bound = PythonVersion(spec.version)
            clauses.append((spec.operator, bound))
        self.requirements = tuple(clauses)  # type: ignore[assignment]
        self._raw = ", ".join(p for p in raw_parts if p) or ">= 0"

    @classmethod
    def requirements_array(cls, raw: Optional[str]) -> List["Requirement"]:
        if raw is None:
            return [cls(None)]
        return [cls(group) for group in cls.OR_SEPARATOR.split(raw.strip())]

    def split_clauses(self, raw: str) -> List[str]:
        parts: List[str] = []
        for chunk in _split_outside(raw, ","):
            parts.extend(
                p for p in re.split(r"(?<=[0-9a-zA-Z*])\s+(?=[<>=!~^])", chunk) if p.strip()
            )
        return parts

    def convert(self, clause: str) -> List[str]:
        clause = clause.strip()
        if clause in ("", "*"):
            return []
        if clause.startswith("^"):
            return self._caret(clause[1:].strip())
        if clause.startswith("~") and not clause.startswith("~="):
            return self._tilde(clause[1:].strip())
        for op in self.PEP440_OPS:
            if clause.startswith(op):
                return [op + clause[len(op):].strip()]
        if clause.startswith("="):
            return ["==" + clause.lstrip("=").strip()]
        return ["==" + clause]

    @staticmethod
    def _release_parts(version: str) -> List[int]:
        try:
            return list(PythonVersion(version).release_segments())
        except InvalidVersion:
            raise BadRequirement(version)

    @classmethod
    def _caret(cls, version: str) -> List[str]:
        parts = cls._release_parts(version)
        index = next((i for i, p in enumerate(parts) if p != 0), len(parts) - 1)
        upper = parts[:index] + [parts[index] + 1] + [0] * (len(parts) - index - 1)
        return [f">={version}", "<" + ".".join(str(p) for p in upper) + ".dev0"]

    @classmethod
    def _tilde(cls, version: str) -> List[str]:
        parts = cls._release_parts(version)
        index = 0 if len(parts) == 1 else 1
        upper = parts[:index] + [parts[index] + 1]
        return [f">={version}", "<" + ".".join(str(p) for p in upper) + ".dev0"]

    def satisfied_by(self, version: VersionLike) -> bool:
        candidate = self._coerce(version)
        return self.specifier_set.contains(str(candidate).strip(), prereleases=True)


_REQUIREMENT_CLASSES: Dict[str, Type[Requirement]] = {}


def register_requirement_class(package_manager: str, requirement_class: Type[Requirement]) -> None:
    _REQUIREMENT_CLASSES[package_manager] = requirement_class


def requirement_class_for(package_manager: str) -> Type[Requirement]:
    try:
        return _REQUIREMENT_CLASSES[package_manager]
    except KeyError:
        raise ValueError(f"No requirement grammar for package manager: {package_manager}")


def parse_requirement(package_manager: str, raw: Optional[str]) -> Requirement:
    return requirement_class_for(package_manager).parse(raw)


def requirements_array(package_manager: str, raw: Optional[str]) -> List[Requirement]:
    return requirement_class_for(package_manager).requirements_array(raw)


def satisfied_by_any(requirements: Iterable[Requirement], version: VersionLike) -> bool:
    """Union semantics over OR groups."""
    return any(requirement.satisfied_by(version) for requirement in requirements)


register_requirement_class("bundler", GemRequirement)
register_requirement_class("npm_and_yarn", NpmRequirement)
register_requirement_class("go_modules", GoRequirement)
register_requirement_class("nuget", NugetRequirement)
register_requirement_class("pip", PythonRequirement)


class UpdateStrategy(Enum):
    BUMP_VERSIONS = "bump_versions"
    BUMP_VERSIONS_IF_NECESSARY = "bump_versions_if_necessary"
    WIDEN_RANGES = "widen_ranges"
    LOCKFILE_ONLY = "lockfile_only"


VERSION_TOKEN = re.compile(
    r"(?<![0-9A-Za-z.])v?[0-9]+(?:\.(?:[0-9]+|[xX*]|[0-9A-Za-z]+))*"
    r"(?:[0-9A-Za-z]*)(?:[-+][0-9A-Za-z.\-+]*[0-9A-Za-z])?"
)
CLAUSE_TOKEN = re.compile(
    r"(?P<op>===|~>|~=|==|!=|>=|<=|\^|~|=|>|<)?\s*(?P<version>" + VERSION_TOKEN.pattern + r")"
)
UNBOUNDED = {"", "*", "x", "X", "latest"}


class RequirementUpdater:
    """
    Rewrites requirement strings so they admit a target version.

    ``updated_requirement`` returns the new string, or the input unchanged
    when no rewrite is called for.
    """

    def __init__(self, package_manager: str, strategy: Union[UpdateStrategy, str] = UpdateStrategy.BUMP_VERSIONS):
        self.package_manager = package_manager
        self.strategy = UpdateStrategy(strategy)
        self.requirement_class = requirement_class_for(package_manager)
        self.version_class = self.requirement_class.version_class

    def updated_requirement(self, requirement: Optional[str], target_version: VersionLike) -> Optional[str]:
        if requirement is None or self.strategy is UpdateStrategy.LOCKFILE_ONLY:
            return requirement
        if requirement.strip() in UNBOUNDED:
            return requirement

        target = normalize_version_string(str(target_version))
        satisfied = self._satisfied(requirement, target)

        if satisfied and self.strategy is not UpdateStrategy.BUMP_VERSIONS:
            return requirement
        if self._is_range(requirement):
            return requirement if satisfied else self._widen_range(requirement, target)
        return self._bump_version_tokens(requirement, target)

    def _satisfied(self, requirement: str, target: str) -> bool:
        return satisfied_by_any(self.requirement_class.requirements_array(requirement), target)

    def _is_range(self, requirement: str) -> bool:
        if self.package_manager == "nuget" and requirement.strip()[:1] in ("[", "("):
            return True
        return bool(re.search(r"<|\s-\s|\|", requirement))

    def _widen_range(self, requirement: str, target: str) -> str:
        if self.package_manager == "nuget":
            return self._widen_interval(requirement, target)

        upper_bounds = []
        hyphen = re.search(r"\s-\s", requirement)
        for match in CLAUSE_TOKEN.finditer(requirement):
            if match.group("op") in ("<", "<="):
                upper_bounds.append(match)
            elif hyphen and not match.group("op") and match.start() > hyphen.start():
                upper_bounds.append(match)

        if len(upper_bounds) == 1:
            match = upper_bounds[0]
            old = match.group("version")
            new = self.update_greatest_version(old, target)
            start, end = match.span("version")
            return requirement[:start] + new + requirement[end:]
        if "|" in requirement:
            separator = " || " if "||" in requirement else " | "
            return requirement.rstrip() + separator + "^" + target
        return requirement

    def _widen_interval(self, requirement: str, target: str) -> str:
        stripped = requirement.strip()
        if "," not in stripped:
            return f"[{target}]"
        head, _, _ = stripped.rpartition(",")
        return f"{head},{target}]"

    def update_greatest_version(self, old_version: str, target: str) -> str:
        """
        Smallest bump of ``old_version``'s most significant component that admits ``target``.

        ``< 2.0.0`` with target ``2.5.1`` becomes ``< 3.0.0``.
        """
        prefix = "v" if old_version[:1] in ("v", "V") else ""
        version = self.version_class(normalize_version_string(old_version))
        old_parts = version.release_segments() or [0]
        target_parts = self.version_class(target).release_segments()
        target_parts = target_parts + [0] * (len(old_parts) - len(target_parts))

        index = max((i for i, part in enumerate(old_parts) if part != 0), default=0)
        parts = []
        for i in range(len(old_parts)):
            if i < index:
                parts.append(target_parts[i])
            elif i == index:
                parts.append(target_parts[i] + 1)
            else:
                parts.append(0)
        return prefix + ".".join(str(p) for p in parts)

    def _bump_version_tokens(self, requirement: str, target: str) -> str:
        updated = self._rewrite_tokens(requirement, target, keep_precision=True)
        if self._satisfied_safely(updated, target):
            return updated
        return self._rewrite_tokens(requirement, target, keep_precision=False)

    def _satisfied_safely(self, requirement: str, target: str) -> bool:
        try:
            return self._satisfied(requirement, target)
        except (BadRequirement, InvalidVersion):
            return False

    def _rewrite_tokens(self, requirement: str, target: str, keep_precision: bool) -> str:
        def replace(match: "re.Match[str]") -> str:
            if match.group("op") in (">", ">=", "!=", "<", "<="):
                return match.group(0)
            start = match.start("version") - match.start(0)
            return match.group(0)[:start] + self._bump_token(match.group("version"), target, keep_precision)

        return CLAUSE_TOKEN.sub(replace, requirement)

    def _bump_token(self, old_token: str, target: str, keep_precision: bool) -> str:
        prefix = "v" if old_token[:1] in ("v", "V") else ""
        old = old_token[len(prefix):]
        if not keep_precision or re.search(r"\d-|\+", old) or self._is_prerelease(target):
            return prefix + target

        old_parts = old.split(".")
        new_parts = target.split(".")[: len(old_parts)]
        new_parts += ["0"] * (len(old_parts) - len(new_parts))
        merged = [
            old_parts[i] if WILDCARD_REGEX.fullmatch(old_parts[i]) else part
            for i, part in enumerate(new_parts)
        ]
        return prefix + ".".join(merged)

    def _is_prerelease(self, target: str) -> bool:
        try:
            return self.version_class(target).prerelease
        except InvalidVersion:
            return False
