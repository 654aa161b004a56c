"""
Targeted manifest edits and lockfile metadata fixes.

Declaration finders locate the text that declares a dependency in one
manifest format; FilePatcher rewrites only the requirement inside those
declarations, so formatting, comments and ordering survive untouched.
"""

import json
import re
import xml.etree.ElementTree as ElementTree
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type
from urllib.parse import urlparse, urlunparse

import toml

from .context import Credential
from .dependency import DependencyFile
from .error_handling import log_parsing_error
from .exceptions import ContentNotChanged, DependencyFileNotParseable
from .structured_logging import log_file_updated


def normalise_python_name(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def _escape_python_name(name: str) -> str:
    # "-", "_" and "." are interchangeable in Python package names
    return re.sub(r"\\?[-_.]", "[-_.]", re.escape(name))


@dataclass(frozen=True)
class Edit:
    """Replace ``old_requirement`` with ``new_requirement`` where ``dependency_name`` is declared."""

    dependency_name: str
    old_requirement: str
    new_requirement: str
    file_name: str


class DeclarationFinder(ABC):
    """Finds the declaration strings for one dependency in one file format."""

    def __init__(self, dependency_name: str, declaring_requirement: Optional[str] = None):
        self.dependency_name = dependency_name
        self.declaring_requirement = declaring_requirement

    @abstractmethod
    def declaration_strings(self, content: str) -> List[str]:
        """Every distinct declaration of the dependency, in order of appearance."""

    @abstractmethod
    def replace_requirement(self, declaration: str, old: str, new: str) -> str:
        """Rewrite the requirement token inside one declaration."""

    def apply(self, content: str, old: str, new: str) -> str:
        for declaration in self.declaration_strings(content):
            content = content.replace(declaration, self.replace_requirement(declaration, old, new))
        return content

    @staticmethod
    def _unique(strings: Iterable[str]) -> List[str]:
        seen: Dict[str, None] = {}
        for string in strings:
            seen.setdefault(string, None)
        return list(seen)


def _replace_quoted(declaration: str, old: str, new: str) -> str:
    pattern = re.compile(r"(?<=[\"'])" + re.escape(old) + r"(?=[\"'])")
    return pattern.sub(lambda _: new, declaration)


class JsonDeclarationFinder(DeclarationFinder):
    """``"name": "requirement"`` pairs in package.json."""

    def declaration_strings(self, content: str) -> List[str]:
        if self.declaring_requirement is None:
            pattern = rf'"{re.escape(self.dependency_name)}"\s*:\s*"[^"]*"'
        else:
            pattern = (
                rf'"{re.escape(self.dependency_name)}"\s*:\s*"{re.escape(self.declaring_requirement)}"'
            )
        return self._unique(m.group(0) for m in re.finditer(pattern, content))

    def replace_requirement(self, declaration: str, old: str, new: str) -> str:
        name_part, _, value = declaration.partition(":")
        return name_part + ":" + _replace_quoted(value, old, new)


class TomlDeclarationFinder(DeclarationFinder):
    """
    Poetry declarations in pyproject.toml.

    Inline forms (``name = "^1.0"``, ``name = {version = "^1.0"}``) are
    preferred; ``[tool.poetry.dependencies.name]`` tables are the fallback.
    """

    TABLE_PREFIX = r"tool\.poetry\.[^\n]+"

    def _declaration_regex(self) -> "re.Pattern[str]":
        return re.compile(
            r"(?:^\s*|[\"'])" + _escape_python_name(self.dependency_name) + r"[\"']?\s*=.*$",
            re.IGNORECASE | re.MULTILINE,
        )

    def _table_declaration_regex(self) -> "re.Pattern[str]":
        return re.compile(
            self.TABLE_PREFIX + r"\." + _escape_python_name(self.dependency_name)
            + r"\]\n.*?\s*version\s* =.*?\n",
            re.IGNORECASE | re.DOTALL,
        )

    def declaration_strings(self, content: str) -> List[str]:
        inline = [m.group(0) for m in self._declaration_regex().finditer(content)]
        if inline:
            return self._unique(inline)
        return self._unique(m.group(0) for m in self._table_declaration_regex().finditer(content))

    def replace_requirement(self, declaration: str, old: str, new: str) -> str:
        if "]\n" in declaration:
            return re.sub(
                r"(\s*version\s*=\s*[\"'])" + re.escape(old),
                lambda m: m.group(1) + new,
                declaration,
            )
        return _replace_quoted(declaration, old, new)


class PipfileDeclarationFinder(TomlDeclarationFinder):
    """``name = "req"`` and ``name = {version = "req"}`` in a Pipfile."""

    TABLE_PREFIX = r"\[(?:dev-)?packages"


class RequirementsTxtFinder(DeclarationFinder):
    """``name[extras] <specifiers>`` lines in a pip requirements file."""

    def _line_regex(self) -> "re.Pattern[str]":
        return re.compile(
            r"^(?P<prefix>[ \t]*" + _escape_python_name(self.dependency_name)
            + r"(?![-_.A-Za-z0-9])(?:\[[^\]]*\])?[ \t]*)(?P<req>[^#;\n\\]*?)(?P<suffix>\s*(?:[;#\\].*)?)$",
            re.IGNORECASE | re.MULTILINE,
        )

    @staticmethod
    def _squash(requirement: Optional[str]) -> str:
        return re.sub(r"\s+", "", requirement or "")

    def declaration_strings(self, content: str) -> List[str]:
        matches = []
        for match in self._line_regex().finditer(content):
            if self.declaring_requirement is not None and self._squash(
                match.group("req")
            ) != self._squash(self.declaring_requirement):
                continue
            matches.append(match.group(0))
        return self._unique(matches)

    def replace_requirement(self, declaration: str, old: str, new: str) -> str:
        match = self._line_regex().match(declaration)
        if not match or self._squash(match.group("req")) != self._squash(old):
            return declaration
        return match.group("prefix") + new + match.group("suffix")


class GoModDeclarationFinder(DeclarationFinder):
    """``module version`` entries of go.mod ``require`` directives."""

    def declaration_strings(self, content: str) -> List[str]:
        version = re.escape(self.declaring_requirement) if self.declaring_requirement else r"\S+"
        pattern = re.compile(
            r"^(?:require\s+)?[ \t]*" + re.escape(self.dependency_name) + r"[ \t]+" + version + r"(?=\s|$)",
            re.MULTILINE,
        )
        return self._unique(m.group(0) for m in pattern.finditer(content))

    def replace_requirement(self, declaration: str, old: str, new: str) -> str:
        return re.sub(r"(?<=\s)" + re.escape(old) + r"$", lambda _: new, declaration)


class GemfileDeclarationFinder(DeclarationFinder):
    """``gem "name", "~> 1.0", ">= 1.0.1"`` lines."""

    def _line_regex(self) -> "re.Pattern[str]":
        return re.compile(
            r"^\s*gem\s*\(?\s*(?P<quote>[\"'])" + re.escape(self.dependency_name)
            + r"(?P=quote)(?P<reqs>(?:\s*,\s*[\"'][^\"'\n]*[\"'])*).*$",
            re.MULTILINE,
        )

    @staticmethod
    def _requirements(reqs: str) -> List[str]:
        return [r.strip() for r in re.findall(r"[\"']([^\"']*)[\"']", reqs)]

    def declaration_strings(self, content: str) -> List[str]:
        return self._unique(m.group(0) for m in self._line_regex().finditer(content))

    def replace_requirement(self, declaration: str, old: str, new: str) -> str:
        match = self._line_regex().match(declaration)
        if not match:
            return declaration
        current = self._requirements(match.group("reqs"))
        if [r.strip() for r in old.split(",")] != current:
            return declaration
        quote = re.search(r"[\"']", match.group("reqs")).group(0)
        replacement = "".join(f", {quote}{r.strip()}{quote}" for r in new.split(","))
        start, end = match.span("reqs")
        return declaration[:start] + replacement + declaration[end:]


class PackagesConfigDeclarationFinder(DeclarationFinder):
    """
    ``<package>`` elements in a NuGet packages.config.

    Matches both ``<package id="x" version="1.0" />`` and block elements
    with ``<id>``/``<version>`` children. Interiors are rescanned so nested
    matches are found; results are deduplicated by exact text.
    """

    DECLARATION_REGEX = re.compile(
        r"""<package\s[^>]*?/>|
            <package\s[^>]*?[^/]>.*?</package>""",
        re.DOTALL | re.VERBOSE,
    )

    def _deep_find_declarations(self, string: str) -> List[str]:
        found = []
        for match in self.DECLARATION_REGEX.findall(string):
            found.append(match)
            found.extend(self._deep_find_declarations(match[:-1]))
        return found

    @staticmethod
    def _strip_namespace(tag: str) -> str:
        return tag.split("}", 1)[-1]

    def _node_details(self, declaration: str) -> Optional[Dict[str, Optional[str]]]:
        try:
            node = ElementTree.fromstring(declaration)
        except ElementTree.ParseError:
            return None
        if self._strip_namespace(node.tag) != "package":
            return None
        children = {self._strip_namespace(c.tag): (c.text or "").strip() for c in node}
        attributes = {self._strip_namespace(k): v.strip() for k, v in node.attrib.items()}
        return {
            "id": attributes.get("id") or children.get("id"),
            "version": attributes.get("version") or children.get("version"),
        }

    def declaration_strings(self, content: str) -> List[str]:
        matches = []
        for declaration in self._deep_find_declarations(content):
            details = self._node_details(declaration)
            if not details or not details["id"]:
                continue
            if details["id"].lower() != self.dependency_name.lower():
                continue
            if details["version"] != self.declaring_requirement:
                continue
            matches.append(declaration)
        return self._unique(matches)

    def replace_requirement(self, declaration: str, old: str, new: str) -> str:
        updated = re.sub(
            r"(\bversion\s*=\s*[\"'])" + re.escape(old) + r"([\"'])",
            lambda m: m.group(1) + new + m.group(2),
            declaration,
        )
        return re.sub(
            r"(<version>\s*)" + re.escape(old) + r"(\s*</version>)",
            lambda m: m.group(1) + new + m.group(2),
            updated,
        )


FINDERS: List[tuple] = [
    (re.compile(r"(^|/)package\.json$"), JsonDeclarationFinder),
    (re.compile(r"(^|/)pyproject\.toml$"), TomlDeclarationFinder),
    (re.compile(r"(^|/)Pipfile$"), PipfileDeclarationFinder),
    (re.compile(r"(^|/)go\.mod$"), GoModDeclarationFinder),
    (re.compile(r"(^|/)(Gemfile|gems\.rb|[^/]*\.gemspec)$"), GemfileDeclarationFinder),
    (re.compile(r"(^|/)packages\.config$", re.IGNORECASE), PackagesConfigDeclarationFinder),
    (re.compile(r"\.(txt|in)$"), RequirementsTxtFinder),
]


def finder_class_for(file_name: str) -> Type[DeclarationFinder]:
    for pattern, finder_class in FINDERS:
        if pattern.search(file_name):
            return finder_class
    raise ValueError(f"No declaration finder for {file_name}")


class FilePatcher:
    """Applies requirement edits to a manifest."""

    def apply(self, file: DependencyFile, edits: Sequence[Edit]) -> DependencyFile:
        """
        Return ``file`` with every edit applied.

        Raises:
            ContentNotChanged: no edit changed the content, including when
                the edits were already applied
        """
        if file.content is None:
            raise DependencyFileNotParseable(file.path, f"{file.path} has no content")

        finder_class = finder_class_for(file.name)
        content = file.content
        for edit in edits:
            finder = finder_class(edit.dependency_name, edit.old_requirement)
            content = finder.apply(content, edit.old_requirement, edit.new_requirement)

        names = [edit.dependency_name for edit in edits]
        if content == file.content:
            log_file_updated(file.name, names, changed=False)
            raise ContentNotChanged(file.name, names)

        log_file_updated(file.name, names)
        return file.with_content(content)


class PoetryLockMetadata:
    """Fixes the ``[metadata]`` block of a regenerated poetry.lock."""

    METADATA_REGEX = re.compile(r"\[metadata\]\n.*?python-versions[^\n]+\n", re.DOTALL)

    @classmethod
    def restore_python_versions(cls, new_lockfile: str, original_lockfile: str) -> str:
        """Put back the ``python-versions`` the lockfile had before the update."""
        try:
            original = toml.loads(original_lockfile)["metadata"]["python-versions"]
        except (toml.TomlDecodeError, KeyError) as e:
            log_parsing_error(
                "Original poetry.lock has no python-versions", "file_patcher",
                "restore_python_versions", file_name="poetry.lock", exception=e,
            )
            return new_lockfile

        def restore(match: "re.Match[str]") -> str:
            return re.sub(
                r"([\"']).*([\"'])\n\Z",
                lambda m: m.group(1) + original + m.group(1) + "\n",
                match.group(0),
            )

        return cls.METADATA_REGEX.sub(restore, new_lockfile, count=1)

    @staticmethod
    def replace_content_hash(new_lockfile: str, correct_hash: str) -> str:
        """Swap the hash computed for the frozen pyproject for the real one."""
        try:
            temporary_hash = toml.loads(new_lockfile)["metadata"]["content-hash"]
        except (toml.TomlDecodeError, KeyError) as e:
            raise DependencyFileNotParseable("poetry.lock", f"poetry.lock has no content-hash: {e}")
        return new_lockfile.replace(temporary_hash, correct_hash)

    @classmethod
    def correct(cls, new_lockfile: str, original_lockfile: str, correct_hash: str) -> str:
        restored = cls.restore_python_versions(new_lockfile, original_lockfile)
        return cls.replace_content_hash(restored, correct_hash)


class PipfileLockMetadata:
    @staticmethod
    def replace_hash(lockfile_content: str, correct_hash: str) -> str:
        try:
            temporary_hash = json.loads(lockfile_content)["_meta"]["hash"]["sha256"]
        except (ValueError, KeyError, TypeError) as e:
            raise DependencyFileNotParseable("Pipfile.lock", f"Pipfile.lock has no _meta hash: {e}")
        return lockfile_content.replace(temporary_hash, correct_hash)


def authed_url(credential: Credential) -> str:
    """Index URL with the credential's secret embedded in it."""
    url = credential.index_url or ""
    parsed = urlparse(url)
    if credential.token:
        userinfo = credential.token
    elif credential.username and credential.password:
        userinfo = f"{credential.username}:{credential.password}"
    else:
        return url
    netloc = parsed.netloc.rsplit("@", 1)[-1]
    return urlunparse(parsed._replace(netloc=f"{userinfo}@{netloc}"))


def _strip_placeholder_auth(url: str) -> str:
    return re.sub(r"\$\{.*\}@", "", url)


class _PythonPreparer:
    def sanitize(self, content: str) -> str:
        """Replace templating placeholders the native tools cannot parse."""
        return re.sub(r"\{\{.*?\}\}", "something", content).replace("#{", "{")

    @staticmethod
    def _parse(content: str, file_name: str) -> Dict[str, Any]:
        try:
            return toml.loads(content)
        except toml.TomlDecodeError as e:
            raise DependencyFileNotParseable(file_name, str(e))

    @staticmethod
    def _sub_auth_url(source: Dict[str, Any], credentials: Sequence[Credential]) -> Optional[Dict[str, Any]]:
        url = source.get("url", "")
        if "${" not in url:
            return source
        base_url = _strip_placeholder_auth(url)
        for credential in credentials:
            if credential.type == "python_index" and _strip_placeholder_auth(credential.index_url or "") == base_url:
                return {**source, "url": authed_url(credential)}
        return None

    @staticmethod
    def _inserted_sources(credentials: Sequence[Credential]) -> List[Dict[str, Any]]:
        return [
            {"name": f"dep-bumper-inserted-index-{i}", "url": authed_url(c)}
            for i, c in enumerate(c for c in credentials if c.type == "python_index")
        ]


class PyprojectPreparer(_PythonPreparer):
    """Produces the temporary pyproject.toml poetry resolves against."""

    DEPENDENCY_TABLES = ("dependencies", "dev-dependencies")

    def __init__(self, pyproject_content: str, lockfile_content: Optional[str] = None):
        self.pyproject_content = pyproject_content
        self.lockfile_content = lockfile_content

    def _dependency_tables(self, poetry: Dict[str, Any]) -> List[Dict[str, Any]]:
        tables = [poetry[key] for key in self.DEPENDENCY_TABLES if isinstance(poetry.get(key), dict)]
        for group in (poetry.get("group") or {}).values():
            if isinstance(group, dict) and isinstance(group.get("dependencies"), dict):
                tables.append(group["dependencies"])
        return tables

    def _locked_packages(self) -> Dict[str, Dict[str, Any]]:
        parsed = self._parse(self.lockfile_content or "", "poetry.lock")
        return {normalise_python_name(p["name"]): p for p in parsed.get("package", [])}

    def freeze_top_level_dependencies_except(self, dependency_names: Iterable[str]) -> str:
        """Pin every other top-level dependency to its locked version."""
        if not self.lockfile_content:
            return self.pyproject_content

        pyproject = self._parse(self.pyproject_content, "pyproject.toml")
        poetry = pyproject.get("tool", {}).get("poetry", {})
        excluded = {normalise_python_name(n) for n in dependency_names}
        locked = self._locked_packages()

        for table in self._dependency_tables(poetry):
            for name, declaration in list(table.items()):
                normalised = normalise_python_name(name)
                if normalised == "python" or normalised in excluded or normalised not in locked:
                    continue
                package = locked[normalised]
                if isinstance(declaration, dict):
                    if "git" in declaration:
                        reference = (package.get("source") or {}).get("resolved_reference")
                        if reference:
                            declaration.pop("branch", None)
                            declaration.pop("tag", None)
                            declaration["rev"] = reference
                    elif "path" not in declaration and "url" not in declaration:
                        declaration["version"] = package["version"]
                else:
                    table[name] = package["version"]
        return toml.dumps(pyproject)

    def lock_dependency_versions(self, versions: Dict[str, str]) -> str:
        """Pin the dependencies being updated to their new versions."""
        pyproject = self._parse(self.pyproject_content, "pyproject.toml")
        poetry = pyproject.setdefault("tool", {}).setdefault("poetry", {})
        wanted = {normalise_python_name(n): v for n, v in versions.items()}
        found = set()
        for table in self._dependency_tables(poetry):
            for name, declaration in list(table.items()):
                version = wanted.get(normalise_python_name(name))
                if version is None:
                    continue
                found.add(normalise_python_name(name))
                if isinstance(declaration, dict):
                    declaration["version"] = version
                else:
                    table[name] = version
        for name, version in versions.items():
            if normalise_python_name(name) not in found:
                poetry.setdefault("dependencies", {})[name] = version
        return toml.dumps(pyproject)

    def update_python_requirement(self, requirement: Optional[str]) -> str:
        if not requirement:
            return self.pyproject_content
        pyproject = self._parse(self.pyproject_content, "pyproject.toml")
        dependencies = pyproject.setdefault("tool", {}).setdefault("poetry", {}).setdefault("dependencies", {})
        dependencies["python"] = requirement
        return toml.dumps(pyproject)

    def replace_sources(self, credentials: Sequence[Credential]) -> str:
        pyproject = self._parse(self.pyproject_content, "pyproject.toml")
        poetry = pyproject.setdefault("tool", {}).setdefault("poetry", {})
        sources = [s for s in (self._sub_auth_url(s, credentials) for s in poetry.get("source", [])) if s]
        poetry["source"] = sources + self._inserted_sources(credentials)
        if not poetry["source"]:
            poetry.pop("source")
        return toml.dumps(pyproject)


class PipfilePreparer(_PythonPreparer):
    """Produces the temporary Pipfile pipenv locks against."""

    DEPENDENCY_GROUP_KEYS = (("packages", "default"), ("dev-packages", "develop"))

    def __init__(self, pipfile_content: str, lockfile_content: Optional[str] = None):
        self.pipfile_content = pipfile_content
        self.lockfile_content = lockfile_content

    def _parsed_lockfile(self) -> Dict[str, Any]:
        try:
            return json.loads(self.lockfile_content or "{}")
        except ValueError as e:
            raise DependencyFileNotParseable("Pipfile.lock", str(e))

    def _locked_details(self, group: str, name: str) -> Any:
        entries = self._parsed_lockfile().get(group, {})
        normalised = {normalise_python_name(k): v for k, v in entries.items()}
        return normalised.get(normalise_python_name(name))

    def freeze_top_level_dependencies_except(self, dependency_names: Iterable[str]) -> str:
        if not self.lockfile_content:
            return self.pipfile_content

        pipfile = self._parse(self.pipfile_content, "Pipfile")
        excluded = {normalise_python_name(n) for n in dependency_names}
        for pipfile_key, lockfile_key in self.DEPENDENCY_GROUP_KEYS:
            for name in list(pipfile.get(pipfile_key, {})):
                if normalise_python_name(name) in excluded:
                    continue
                self._freeze_dependency(pipfile[pipfile_key], name, self._locked_details(lockfile_key, name))
        return toml.dumps(pipfile)

    @staticmethod
    def _freeze_dependency(group: Dict[str, Any], name: str, details: Any) -> None:
        locked_version = None
        locked_ref = None
        if isinstance(details, str):
            locked_version = re.sub(r"^==", "", details)
        elif isinstance(details, dict):
            if details.get("version"):
                locked_version = re.sub(r"^==", "", details["version"])
            locked_ref = details.get("ref")

        requirement = group[name]
        if isinstance(requirement, dict) and locked_version:
            requirement["version"] = f"=={locked_version}"
        elif isinstance(requirement, dict) and locked_ref and not requirement.get("ref"):
            requirement["ref"] = locked_ref
        elif locked_version:
            group[name] = f"=={locked_version}"

    def update_python_requirement(self, requirement: Optional[str]) -> str:
        pipfile = self._parse(self.pipfile_content, "Pipfile")
        requires = pipfile.setdefault("requires", {})
        if requires.get("python_full_version") and requires.get("python_version"):
            del requires["python_full_version"]
        elif requires.get("python_full_version"):
            del requires["python_full_version"]
            if requirement:
                requires["python_version"] = requirement
        return toml.dumps(pipfile)

    def replace_sources(self, credentials: Sequence[Credential]) -> str:
        pipfile = self._parse(self.pipfile_content, "Pipfile")
        sources = [s for s in (self._sub_auth_url(s, credentials) for s in pipfile.get("source", [])) if s]
        pipfile["source"] = sources + self._inserted_sources(credentials)
        return toml.dumps(pipfile)
