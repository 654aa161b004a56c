"""
Tests for version parsing and ordering.
"""

import pytest

from dep_bumper.exceptions import InvalidVersion
from dep_bumper.versions import (
    GemVersion,
    GitCommitVersion,
    GoVersion,
    NugetVersion,
    PythonVersion,
    SemverVersion,
    compare_versions,
    looks_like_commit_sha,
    normalize_version_string,
    parse_version,
    supported_package_managers,
    version_class_for,
    version_correct,
)

SHA = "aa218f56b14c9653891f9e74264a383fa43fefbd"


class TestGemVersion:
    """Ordering rules shared by every segment-based grammar."""

    def test_prerelease_sorts_before_release(self):
        assert GemVersion("1.0.0.pre") < GemVersion("1.0.0")
        assert GemVersion("1.0.0-rc1") < GemVersion("1.0.0")

    def test_trailing_zeros_are_ignored(self):
        assert GemVersion("1.0.0") == GemVersion("1.0")
        assert GemVersion("1.0.0") == "1"
        assert hash(GemVersion("1.0.0")) == hash(GemVersion("1"))

    def test_numeric_ordering(self):
        assert GemVersion("1.10.0") > GemVersion("1.9.0")
        assert sorted(GemVersion(v) for v in ["2.0", "1.2.3", "1.10"]) == ["1.2.3", "1.10", "2.0"]

    def test_bump(self):
        assert GemVersion("1.2.3").bump() == "1.3"
        assert GemVersion("1").bump() == "2"

    def test_release_drops_prerelease(self):
        assert str(GemVersion("1.2.0.beta1").release()) == "1.2.0"

    def test_invalid(self):
        with pytest.raises(InvalidVersion):
            GemVersion("not a version")
        assert not GemVersion.correct("")
        assert not GemVersion.correct(None)

    def test_comparing_to_garbage_string_is_unequal(self):
        assert GemVersion("1.0") != "banana"


class TestSemverVersion:
    """npm versions keep their original spelling."""

    def test_leading_v(self):
        version = SemverVersion("v1.2.3")
        assert str(version) == "v1.2.3"
        assert version == "1.2.3"

    def test_build_metadata(self):
        version = SemverVersion("1.0.0+build.5")
        assert version.build_info == "build.5"
        assert version == "1.0.0"

    def test_prerelease_spelling_is_kept(self):
        assert str(SemverVersion("1.0.1-rc1")) == "1.0.1-rc1"
        assert SemverVersion("1.0.1-rc1").prerelease

    def test_major_minor_patch(self):
        version = SemverVersion("4.17.21")
        assert (version.major, version.minor, version.patch) == (4, 17, 21)

    def test_semver_for_ignores_malformed(self):
        assert SemverVersion.semver_for("") is None
        assert SemverVersion.semver_for("1.2.3 ") == "1.2.3 "
        assert SemverVersion.semver_for("^1.2") is None

    def test_backwards_compatible_with(self):
        assert SemverVersion("1.4.0").backwards_compatible_with(SemverVersion("1.2.0"))
        assert not SemverVersion("2.0.0").backwards_compatible_with(SemverVersion("1.2.0"))
        assert not SemverVersion("0.3.0").backwards_compatible_with(SemverVersion("0.2.0"))


class TestGoVersion:
    def test_pseudo_version(self):
        version = GoVersion("v0.0.0-20191109021931-daa7c04131f5")
        assert version.pseudo_version
        assert version.revision == "daa7c04131f5"
        assert version.prerelease

    def test_pseudo_versions_order_by_time(self):
        older = GoVersion("v0.0.0-20191109021931-daa7c04131f5")
        newer = GoVersion("v0.0.0-20200101000000-0123456789ab")
        assert older < newer

    def test_incompatible(self):
        assert GoVersion("v2.0.0+incompatible").incompatible
        assert not GoVersion("v2.0.0").incompatible


class TestOtherGrammars:
    def test_nuget_four_parts(self):
        assert NugetVersion("1.2.3.4") > NugetVersion("1.2.3")
        assert not NugetVersion.correct("1.2.3.4.5")

    def test_python_uses_pep440(self):
        assert PythonVersion("1.0rc1") < PythonVersion("1.0")
        assert PythonVersion("1.0.post1") > PythonVersion("1.0")
        assert PythonVersion("1.0") == PythonVersion("1.0.0")
        assert PythonVersion("2.0.0rc1").prerelease

    def test_python_invalid(self):
        with pytest.raises(InvalidVersion):
            PythonVersion("not-a-version!")

    def test_commit_equality_only(self):
        assert GitCommitVersion(SHA) == SHA.upper()
        with pytest.raises(TypeError):
            GitCommitVersion(SHA) < GitCommitVersion("b" * 40)

    def test_cross_grammar_comparison_raises(self):
        with pytest.raises(TypeError):
            SemverVersion("1.0.0") < GoVersion("v1.0.0")
        with pytest.raises(TypeError):
            SemverVersion("1.0.0").compare(GitCommitVersion(SHA))


class TestRegistry:
    def test_parse_version_dispatch(self):
        assert isinstance(parse_version("npm_and_yarn", "1.0.0"), SemverVersion)
        assert isinstance(parse_version("pip", "1.0"), PythonVersion)
        assert isinstance(parse_version("npm_and_yarn", SHA), GitCommitVersion)

    def test_unknown_package_manager(self):
        with pytest.raises(ValueError):
            version_class_for("cobol")

    def test_supported_package_managers(self):
        managers = supported_package_managers()
        assert "npm_and_yarn" in managers
        assert managers == sorted(managers)

    def test_helpers(self):
        assert normalize_version_string(" v1.2.3 ") == "1.2.3"
        assert normalize_version_string("version") == "version"
        assert looks_like_commit_sha(SHA)
        assert not looks_like_commit_sha("abc123")
        assert version_correct("submodules", SHA)
        assert not version_correct("bundler", "")
        assert compare_versions("bundler", "1.2", "1.10") == -1
        assert compare_versions("go_modules", "v1.0.0", "1.0.0") == 0
