"""
Version parsing and comparison for every supported ecosystem.

All grammars share one representation: an ordered sequence of integer and
string segments. Letters mark a pre-release, and a pre-release sorts before
the release it precedes (``1.0.0-rc1 < 1.0.0``). Ecosystem classes only
override the accepted pattern and how segments are extracted.
"""

import functools
import re
from typing import Dict, List, Optional, Tuple, Type, Union

from packaging.version import InvalidVersion as PackagingInvalidVersion
from packaging.version import Version as PackagingVersion

from .exceptions import InvalidVersion

Segment = Union[int, str]

GEM_VERSION_PATTERN = r"[0-9]+(?:\.[0-9a-zA-Z]+)*(?:-[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*)?"
COMMIT_SHA_PATTERN = re.compile(r"\A[0-9a-f]{40}\Z", re.IGNORECASE)


def normalize_version_string(raw: str) -> str:
    """Strip a single leading ``v`` (``v1.2.3`` and ``1.2.3`` are the same version)."""
    raw = raw.strip()
    if raw[:1] in ("v", "V") and raw[1:2].isdigit():
        return raw[1:]
    return raw


def looks_like_commit_sha(raw: Optional[str]) -> bool:
    return bool(raw) and bool(COMMIT_SHA_PATTERN.match(raw.strip()))


@functools.total_ordering
class BaseVersion:
    """Gem-style version: dotted segments, letters start a pre-release."""

    VERSION_PATTERN = GEM_VERSION_PATTERN
    ecosystem = "generic"

    def __init__(self, raw: Union[str, "BaseVersion"]):
        if isinstance(raw, BaseVersion):
            raw = str(raw)
        if not isinstance(raw, str) or not self.correct(raw):
            raise InvalidVersion(raw, self.ecosystem)
        self._raw = raw
        self._version_string = self._strip(raw)
        self._segments = self._extract_segments(self._version_string)

    @classmethod
    def _anchored(cls) -> "re.Pattern[str]":
        cached = cls.__dict__.get("_ANCHORED")
        if cached is None:
            cached = re.compile(r"\A\s*(" + cls.VERSION_PATTERN + r")\s*\Z")
            cls._ANCHORED = cached
        return cached

    @classmethod
    def correct(cls, raw: Optional[Union[str, "BaseVersion"]]) -> bool:
        """Non-throwing validity check, safe to call on untrusted lockfile data."""
        if raw is None:
            return False
        if isinstance(raw, BaseVersion):
            raw = str(raw)
        if not isinstance(raw, str):
            return False
        return bool(cls._anchored().match(cls._strip(raw)))

    @classmethod
    def parse(cls, raw: Union[str, "BaseVersion"]) -> "BaseVersion":
        if isinstance(raw, cls):
            return raw
        return cls(raw)

    @staticmethod
    def _strip(raw: str) -> str:
        return raw.strip()

    @staticmethod
    def _extract_segments(version_string: str) -> Tuple[Segment, ...]:
        prepared = version_string.replace("-", ".pre.")
        return tuple(
            int(token) if token.isdigit() else token
            for token in re.findall(r"[0-9]+|[a-zA-Z]+", prepared)
        )

    @property
    def segments(self) -> Tuple[Segment, ...]:
        return self._segments

    def _split_segments(self) -> Tuple[List[Segment], List[Segment]]:
        release: List[Segment] = []
        pre: List[Segment] = []
        for segment in self._segments:
            if pre or isinstance(segment, str):
                pre.append(segment)
            else:
                release.append(segment)
        return release, pre

    def canonical_segments(self) -> Tuple[Segment, ...]:
        release, pre = self._split_segments()
        while release and release[-1] == 0:
            release.pop()
        while pre and pre[-1] == 0:
            pre.pop()
        return tuple(release + pre)

    @property
    def prerelease(self) -> bool:
        return any(isinstance(s, str) for s in self._segments)

    def release_segments(self) -> List[int]:
        return [s for s in self._split_segments()[0] if isinstance(s, int)]

    def release(self) -> "BaseVersion":
        """Drop any pre-release suffix."""
        if not self.prerelease:
            return self
        return self.__class__(".".join(str(s) for s in self.release_segments() or [0]))

    def bump(self) -> "BaseVersion":
        """Next version for pessimistic (``~>``) comparison: ``1.2.3`` -> ``1.3``."""
        parts = self.release_segments() or [0]
        if len(parts) > 1:
            parts = parts[:-1]
        parts[-1] += 1
        return self.__class__(".".join(str(p) for p in parts))

    def _check_comparable(self, other: object) -> "BaseVersion":
        if isinstance(other, str):
            other = self.__class__(other)
        if not isinstance(other, BaseVersion):
            raise TypeError(f"Cannot compare {type(self).__name__} with {type(other).__name__}")
        if isinstance(other, GitCommitVersion) or type(other).ecosystem != type(self).ecosystem:
            raise TypeError(
                f"Versions from different grammars are not ordered: {self!r} vs {other!r}"
            )
        return other

    def compare(self, other: Union[str, "BaseVersion"]) -> int:
        other = self._check_comparable(other)
        left = self.canonical_segments()
        right = other.canonical_segments()
        for i in range(max(len(left), len(right))):
            lhs = left[i] if i < len(left) else 0
            rhs = right[i] if i < len(right) else 0
            if lhs == rhs:
                continue
            if isinstance(lhs, str) and isinstance(rhs, int):
                return -1
            if isinstance(lhs, int) and isinstance(rhs, str):
                return 1
            return -1 if lhs < rhs else 1
        return 0

    def __eq__(self, other: object) -> bool:
        if isinstance(other, str):
            if not self.correct(other):
                return False
            other = self.__class__(other)
        if not isinstance(other, BaseVersion) or type(other).ecosystem != type(self).ecosystem:
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: object) -> bool:
        return self.compare(other) < 0

    def __hash__(self) -> int:
        return hash((type(self).ecosystem, self.canonical_segments()))

    def __str__(self) -> str:
        return self._raw

    def __repr__(self) -> str:
        return f"#<{type(self).__name__} {self._raw}>"


class GemVersion(BaseVersion):
    """Bundler / RubyGems versions."""

    ecosystem = "bundler"


class SemverVersion(BaseVersion):
    """
    npm / yarn versions.

    Accepts an optional leading ``v`` and ``+build`` metadata; ``str()``
    returns the string as written (``1.0.1-rc1`` is never rewritten).
    """

    VERSION_PATTERN = GEM_VERSION_PATTERN + r"(?:\+[0-9a-zA-Z\-.]+)?"
    ecosystem = "npm_and_yarn"

    def __init__(self, raw: Union[str, BaseVersion]):
        super().__init__(raw)
        self.build_info: Optional[str] = None
        if "+" in self._version_string:
            self._version_string, self.build_info = self._version_string.split("+", 1)
            self._segments = self._extract_segments(self._version_string)

    @staticmethod
    def _strip(raw: str) -> str:
        return normalize_version_string(raw)

    @staticmethod
    def _extract_segments(version_string: str) -> Tuple[Segment, ...]:
        return BaseVersion._extract_segments(version_string.split("+", 1)[0])

    @classmethod
    def semver_for(cls, raw: Optional[str]) -> Optional[str]:
        """Ignore malformed lockfile versions (empty strings, stray characters)."""
        if not raw or not cls.correct(raw):
            return None
        return raw

    @property
    def major(self) -> int:
        parts = self.release_segments()
        return parts[0] if parts else 0

    @property
    def minor(self) -> int:
        parts = self.release_segments()
        return parts[1] if len(parts) > 1 else 0

    @property
    def patch(self) -> int:
        parts = self.release_segments()
        return parts[2] if len(parts) > 2 else 0

    def backwards_compatible_with(self, other: "SemverVersion") -> bool:
        if self.major == 0:
            return self == other
        return self.major == other.major and self.minor >= other.minor


class GoVersion(SemverVersion):
    """
    Go module versions: ``v`` prefix, ``+incompatible`` and pseudo-versions.

    A pseudo-version (``v0.0.0-20191109021931-daa7c04131f5``) is a
    pre-release whose first pre-release segment is the commit timestamp, so
    pseudo-versions order by time.
    """

    ecosystem = "go_modules"
    PSEUDO_VERSION = re.compile(
        r"(?:^|[.-])(?:0\.)?(?P<timestamp>\d{14})-(?P<revision>[0-9a-f]{12})$"
    )

    def __init__(self, raw: Union[str, BaseVersion]):
        super().__init__(raw)
        self.incompatible = self.build_info == "incompatible"

    @property
    def pseudo_version(self) -> bool:
        return bool(self.PSEUDO_VERSION.search(self._version_string))

    @property
    def revision(self) -> Optional[str]:
        match = self.PSEUDO_VERSION.search(self._version_string)
        return match.group("revision") if match else None


class NugetVersion(BaseVersion):
    """NuGet versions: up to four numeric parts, optional pre-release and build metadata."""

    VERSION_PATTERN = (
        r"[0-9]+(?:\.[0-9]+){0,3}(?:-[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*)?(?:\+[0-9A-Za-z\-.]+)?"
    )
    ecosystem = "nuget"

    @staticmethod
    def _extract_segments(version_string: str) -> Tuple[Segment, ...]:
        return BaseVersion._extract_segments(version_string.split("+", 1)[0])


class PythonVersion(BaseVersion):
    """PEP 440 versions, ordered by the ``packaging`` library."""

    ecosystem = "pip"

    def __init__(self, raw: Union[str, BaseVersion]):
        if isinstance(raw, BaseVersion):
            raw = str(raw)
        if not isinstance(raw, str):
            raise InvalidVersion(raw, self.ecosystem)
        try:
            self._parsed = PackagingVersion(raw.strip())
        except PackagingInvalidVersion:
            raise InvalidVersion(raw, self.ecosystem)
        self._raw = raw
        self._version_string = raw.strip()
        self._segments = tuple(self._parsed.release) + (
            tuple(x for x in self._parsed.pre) if self._parsed.pre else ()
        )

    @classmethod
    def correct(cls, raw: Optional[Union[str, BaseVersion]]) -> bool:
        if isinstance(raw, BaseVersion):
            raw = str(raw)
        if not isinstance(raw, str):
            return False
        try:
            PackagingVersion(raw.strip())
        except PackagingInvalidVersion:
            return False
        return True

    @property
    def prerelease(self) -> bool:
        return self._parsed.is_prerelease

    def release_segments(self) -> List[int]:
        return list(self._parsed.release)

    def release(self) -> "PythonVersion":
        return self.__class__(self._parsed.base_version)

    def compare(self, other: Union[str, BaseVersion]) -> int:
        other = self._check_comparable(other)
        if self._parsed == other._parsed:
            return 0
        return -1 if self._parsed < other._parsed else 1

    def __hash__(self) -> int:
        return hash((type(self).ecosystem, self._parsed))


class GitCommitVersion(BaseVersion):
    """
    A full 40 character commit SHA.

    Commits are only ever compared for equality; they have no order and
    are never ordered against semantic versions.
    """

    VERSION_PATTERN = r"[0-9a-fA-F]{40}"
    ecosystem = "submodules"

    @staticmethod
    def _extract_segments(version_string: str) -> Tuple[Segment, ...]:
        return (version_string.lower(),)

    @property
    def prerelease(self) -> bool:
        return False

    def compare(self, other: Union[str, BaseVersion]) -> int:
        raise TypeError("Commit SHAs have no ordering")

    def __eq__(self, other: object) -> bool:
        if isinstance(other, str):
            return self._version_string.lower() == other.strip().lower()
        if isinstance(other, GitCommitVersion):
            return self._version_string.lower() == other._version_string.lower()
        return False

    def __lt__(self, other: object) -> bool:
        raise TypeError("Commit SHAs have no ordering")

    def __hash__(self) -> int:
        return hash(("submodules", self._version_string.lower()))


_VERSION_CLASSES: Dict[str, Type[BaseVersion]] = {}


def register_version_class(package_manager: str, version_class: Type[BaseVersion]) -> None:
    _VERSION_CLASSES[package_manager] = version_class


def version_class_for(package_manager: str) -> Type[BaseVersion]:
    try:
        return _VERSION_CLASSES[package_manager]
    except KeyError:
        raise ValueError(f"Unsupported package manager: {package_manager}")


def supported_package_managers() -> List[str]:
    return sorted(_VERSION_CLASSES)


def parse_version(package_manager: str, raw: Union[str, BaseVersion]) -> BaseVersion:
    """
    Parse ``raw`` with the grammar of ``package_manager``.

    Full commit SHAs always parse as GitCommitVersion, whatever the ecosystem.
    """
    if isinstance(raw, str) and looks_like_commit_sha(raw):
        return GitCommitVersion(raw)
    return version_class_for(package_manager).parse(raw)


def version_correct(package_manager: str, raw: Optional[str]) -> bool:
    if looks_like_commit_sha(raw):
        return True
    return version_class_for(package_manager).correct(raw)


def compare_versions(package_manager: str, left: str, right: str) -> int:
    """Return -1, 0 or 1."""
    return parse_version(package_manager, left).compare(parse_version(package_manager, right))


register_version_class("bundler", GemVersion)
register_version_class("npm_and_yarn", SemverVersion)
register_version_class("go_modules", GoVersion)
register_version_class("nuget", NugetVersion)
register_version_class("pip", PythonVersion)
register_version_class("submodules", GitCommitVersion)
register_version_class("github_actions", SemverVersion)
