"""
Tests for reading dependency files from a working copy and recording commits.
"""

import json

import pytest

from dep_bumper.content_provider import (
    Found,
    LocalDirectoryProvider,
    NotFound,
    fetch_dependency_files,
    npm_path_dependency_details,
)
from dep_bumper.dependency import DependencyFile, DependencyRequirement, UpdatedDependency
from dep_bumper.exceptions import (
    DependencyFileNotFound,
    DependencyFileNotParseable,
    PathDependencyUnreachable,
)


def write_package_json(root, dependencies, **extra):
    (root / "package.json").write_text(json.dumps({"name": "app", "dependencies": dependencies, **extra}))


class TestLocalDirectoryProvider:
    def test_fetch_file(self, sample_repo):
        provider = LocalDirectoryProvider(sample_repo)
        result = provider.fetch_file("/package.json")
        assert isinstance(result, Found)
        assert json.loads(result.content)["name"] == "app"
        assert provider.fetch_file("yarn.lock") == NotFound("yarn.lock")

    def test_paths_outside_the_repository(self, sample_repo):
        with pytest.raises(PathDependencyUnreachable):
            LocalDirectoryProvider(sample_repo).fetch_file("../secrets.txt")

    def test_size_limit(self, sample_repo):
        with pytest.raises(DependencyFileNotParseable):
            LocalDirectoryProvider(sample_repo, max_file_size_bytes=10).fetch_file("package.json")

    def test_binary_file(self, sample_repo):
        (sample_repo / "blob.bin").write_bytes(b"\xff\xfe\x00")
        with pytest.raises(DependencyFileNotParseable):
            LocalDirectoryProvider(sample_repo).fetch_file("blob.bin")

    def test_fetch_tree_skips_git(self, sample_repo):
        (sample_repo / ".git").mkdir()
        (sample_repo / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        tree = LocalDirectoryProvider(sample_repo).fetch_tree()
        assert ".git/HEAD" not in tree
        assert "packages/shared/package.json" in tree
        assert LocalDirectoryProvider(sample_repo).fetch_tree("/nowhere") == []

    def test_commit_and_pull_request_records(self, sample_repo, tmp_path):
        provider = LocalDirectoryProvider(sample_repo, output_dir=tmp_path / "out", branch="develop")
        files = [DependencyFile("package.json", "{}")]
        commit_id = provider.create_commit("dep-bumper/npm/lodash", "Bump lodash", files)

        commit = json.loads((tmp_path / "out" / "commits" / f"{commit_id}.json").read_text())
        assert commit["base"] == "develop"
        assert commit["files"] == [{"path": "/package.json", "content": "{}", "deleted": False}]

        updated = UpdatedDependency(
            name="lodash",
            package_manager="npm_and_yarn",
            previous_version="4.17.20",
            new_version="4.17.21",
            previous_requirements=(DependencyRequirement("package.json", "^4.17.20"),),
            new_requirements=(DependencyRequirement("package.json", "^4.17.21"),),
            updated_files=tuple(files),
        )
        record = provider.create_pull_request("dep-bumper/npm/lodash", "Bump lodash", "", commit_id, dependencies=[updated])
        assert (tmp_path / "out" / "pull_requests" / f"{commit_id}.json").is_file()
        assert record["dependencies"][0]["new_version"] == "4.17.21"
        assert record["base"] == "develop"

    def test_same_content_same_commit_id(self, sample_repo, tmp_path):
        provider = LocalDirectoryProvider(sample_repo, output_dir=tmp_path / "out")
        files = [DependencyFile("package.json", "{}")]
        assert provider.create_commit("b", "m", files) == provider.create_commit("b", "m", files)


class TestFetchDependencyFiles:
    def test_npm_project(self, sample_repo):
        files = fetch_dependency_files(LocalDirectoryProvider(sample_repo), "npm_and_yarn")
        by_name = {f.name: f for f in files}
        assert list(by_name) == ["package.json", "package-lock.json", ".npmrc", "packages/shared/package.json"]
        assert by_name[".npmrc"].support_file
        assert by_name["packages/shared/package.json"].support_file
        assert not by_name["package.json"].support_file

    def test_subdirectory(self, sample_repo):
        files = fetch_dependency_files(LocalDirectoryProvider(sample_repo), "npm_and_yarn", "packages/shared")
        assert [(f.name, f.directory) for f in files] == [("package.json", "/packages/shared")]

    def test_missing_manifest(self, sample_repo):
        with pytest.raises(DependencyFileNotFound) as excinfo:
            fetch_dependency_files(LocalDirectoryProvider(sample_repo), "go_modules")
        assert excinfo.value.file_path == "/go.mod"

    def test_python_alternatives(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[tool.poetry]\n")
        (tmp_path / "poetry.lock").write_text("")
        files = fetch_dependency_files(LocalDirectoryProvider(tmp_path), "pip")
        assert [f.name for f in files] == ["pyproject.toml", "poetry.lock"]

    def test_unsupported_package_manager(self, sample_repo):
        with pytest.raises(ValueError):
            fetch_dependency_files(LocalDirectoryProvider(sample_repo), "maven")

    def test_escaping_path_dependency(self, tmp_path):
        write_package_json(tmp_path, {"evil": "file:../../outside"})
        with pytest.raises(PathDependencyUnreachable):
            fetch_dependency_files(LocalDirectoryProvider(tmp_path), "npm_and_yarn")

    def test_missing_path_dependency_gets_a_placeholder(self, tmp_path):
        write_package_json(tmp_path, {"local": "file:./vendor/local"})
        files = fetch_dependency_files(LocalDirectoryProvider(tmp_path), "npm_and_yarn")
        placeholder = next(f for f in files if f.name == "vendor/local/package.json")
        assert json.loads(placeholder.content) == {"name": "local", "version": "0.0.1"}

    def test_missing_tarball_is_skipped(self, tmp_path):
        write_package_json(tmp_path, {"packed": "file:./vendor/packed.tgz"})
        files = fetch_dependency_files(LocalDirectoryProvider(tmp_path), "npm_and_yarn")
        assert [f.name for f in files] == ["package.json"]

    def test_nested_path_dependencies(self, tmp_path):
        write_package_json(tmp_path, {"a": "file:./a"})
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "package.json").write_text(json.dumps({"name": "a", "dependencies": {"b": "file:../b"}}))
        files = fetch_dependency_files(LocalDirectoryProvider(tmp_path), "npm_and_yarn")
        assert [f.name for f in files] == ["package.json", "a/package.json", "b/package.json"]


class TestNpmPathDependencyDetails:
    def test_manifest(self):
        file = DependencyFile("package.json", json.dumps({"dependencies": {"x": "link:./libs/x", "y": "^1.0.0"}}))
        assert npm_path_dependency_details(file) == [("x", "libs/x")]

    def test_resolutions(self):
        file = DependencyFile(
            "package.json",
            json.dumps({"dependencies": {}, "resolutions": {"parent/**/@scope/target": "file:./vendored"}}),
        )
        assert npm_path_dependency_details(file) == [("@scope/target", "vendored")]

    def test_lockfile(self):
        lockfile = DependencyFile(
            "package-lock.json",
            json.dumps({"dependencies": {"shared": {"version": "file:packages/shared"}, "self": {"version": "file:"}}}),
        )
        assert npm_path_dependency_details(lockfile) == [("shared", "packages/shared")]

    def test_malformed_sections(self):
        with pytest.raises(DependencyFileNotParseable):
            npm_path_dependency_details(DependencyFile("package.json", json.dumps({"dependencies": ["x"]})))

    def test_other_files(self):
        assert npm_path_dependency_details(DependencyFile(".npmrc", "registry=x")) == []
