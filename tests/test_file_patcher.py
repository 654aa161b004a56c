"""
Tests for manifest patching and lockfile metadata fixes.
"""

import json

import pytest
import toml

from dep_bumper.context import Credential
from dep_bumper.dependency import DependencyFile
from dep_bumper.exceptions import ContentNotChanged, DependencyFileNotParseable
from dep_bumper.file_patcher import (
    Edit,
    FilePatcher,
    GemfileDeclarationFinder,
    PipfileLockMetadata,
    PipfilePreparer,
    PoetryLockMetadata,
    PyprojectPreparer,
    authed_url,
    finder_class_for,
    normalise_python_name,
)

PYPROJECT = """[tool.poetry]
name = "app"
version = "0.1.0"

[tool.poetry.dependencies]
python = "^3.8"
requests = "^2.25"
flask = {version = "^1.0", extras = ["dotenv"]}

[tool.poetry.dependencies.django]
version = "^3.0"
optional = true
"""

POETRY_LOCK = """[[package]]
name = "requests"
version = "2.25.1"

[[package]]
name = "Flask"
version = "1.1.2"

[[package]]
name = "django"
version = "3.2.4"

[metadata]
lock-version = "1.1"
python-versions = "^3.8"
content-hash = "originalhash"
"""

GO_MOD = """module example.com/app

go 1.20

require (
\tgithub.com/pkg/errors v0.9.0
\tgolang.org/x/text v0.3.6 // indirect
)

require github.com/stretchr/testify v1.7.0
"""

PACKAGES_CONFIG = """<?xml version="1.0" encoding="utf-8"?>
<packages>
  <package id="Newtonsoft.Json" version="12.0.1" targetFramework="net45" />
  <package id="NUnit" version="3.12.0" targetFramework="net45" />
</packages>
"""


def patch(name, content, *edits):
    file = DependencyFile(name=name, content=content)
    return FilePatcher().apply(file, [Edit(n, old, new, name) for n, old, new in edits]).content


class TestPackageJson:
    def test_rewrites_only_the_requirement(self, package_json):
        updated = patch("package.json", package_json.content, ("lodash", "^4.17.20", "^4.17.21"))
        assert '"lodash": "^4.17.21"' in updated
        assert updated.replace("^4.17.21", "^4.17.20") == package_json.content

    def test_same_name_in_several_sections(self):
        content = '{\n  "dependencies": {"a": "^1.0.0"},\n  "devDependencies": {"a": "^1.0.0"}\n}\n'
        updated = patch("package.json", content, ("a", "^1.0.0", "^2.0.0"))
        assert updated.count('"a": "^2.0.0"') == 2

    def test_already_applied(self, package_json):
        with pytest.raises(ContentNotChanged) as excinfo:
            patch("package.json", package_json.content, ("lodash", "^4.17.19", "^4.17.21"))
        assert excinfo.value.error_details()["dependencies"] == ["lodash"]


class TestRequirementsTxt:
    def test_keeps_comments_and_layout(self, requirements_txt):
        updated = patch("requirements.txt", requirements_txt.content, ("flask", ">=1.0,<2.0", ">=1.0,<3.0"))
        assert "flask>=1.0,<3.0  # web\n" in updated
        assert updated.startswith("requests==2.25.1\n")

    def test_name_normalisation(self, requirements_txt):
        updated = patch(
            "requirements.txt", requirements_txt.content, ("django-rest-framework", "==3.12.0", "==3.13.0")
        )
        assert "Django_Rest-framework==3.13.0" in updated

    def test_prefix_names_do_not_match(self):
        updated = patch("requirements.txt", "requests==1.0\nrequests-oauthlib==1.0\n", ("requests", "==1.0", "==2.0"))
        assert updated == "requests==2.0\nrequests-oauthlib==1.0\n"

    def test_extras_and_markers(self):
        content = "celery[redis]==5.0.0 ; python_version >= '3.7'\n"
        updated = patch("requirements.in", content, ("celery", "==5.0.0", "==5.1.0"))
        assert updated == "celery[redis]==5.1.0 ; python_version >= '3.7'\n"


class TestPyprojectToml:
    def test_inline_string(self):
        updated = patch("pyproject.toml", PYPROJECT, ("requests", "^2.25", "^2.26"))
        assert 'requests = "^2.26"' in updated

    def test_inline_table(self):
        updated = patch("pyproject.toml", PYPROJECT, ("flask", "^1.0", "^2.0"))
        assert 'flask = {version = "^2.0", extras = ["dotenv"]}' in updated

    def test_dependency_table(self):
        updated = patch("pyproject.toml", PYPROJECT, ("django", "^3.0", "^4.0"))
        assert '[tool.poetry.dependencies.django]\nversion = "^4.0"\noptional = true' in updated


class TestOtherManifests:
    def test_go_mod_block_and_single_line(self):
        updated = patch(
            "go.mod",
            GO_MOD,
            ("golang.org/x/text", "v0.3.6", "v0.3.7"),
            ("github.com/stretchr/testify", "v1.7.0", "v1.8.0"),
        )
        assert "\tgolang.org/x/text v0.3.7 // indirect\n" in updated
        assert "require github.com/stretchr/testify v1.8.0\n" in updated
        assert "github.com/pkg/errors v0.9.0" in updated

    def test_gemfile(self):
        content = 'source "https://rubygems.org"\ngem "rails", "~> 6.1", ">= 6.1.4", require: false\n'
        updated = patch("Gemfile", content, ("rails", "~> 6.1, >= 6.1.4", "~> 7.0, >= 7.0.1"))
        assert 'gem "rails", "~> 7.0", ">= 7.0.1", require: false\n' in updated

    def test_gemfile_requirement_mismatch_is_left_alone(self):
        finder = GemfileDeclarationFinder("rails")
        line = "gem 'rails', '~> 6.1'"
        assert finder.replace_requirement(line, "~> 5.0", "~> 7.0") == line

    def test_packages_config(self):
        updated = patch("packages.config", PACKAGES_CONFIG, ("newtonsoft.json", "12.0.1", "13.0.1"))
        assert '<package id="Newtonsoft.Json" version="13.0.1" targetFramework="net45" />' in updated
        assert '<package id="NUnit" version="3.12.0"' in updated
        assert updated.startswith('<?xml version="1.0"')

    def test_packages_config_block_form(self):
        content = "<packages>\n  <package targetFramework=\"net45\">\n    <id>NUnit</id>\n    <version>3.12.0</version>\n  </package>\n</packages>\n"
        updated = patch("packages.config", content, ("NUnit", "3.12.0", "3.13.0"))
        assert "<version>3.13.0</version>" in updated

    def test_unknown_file(self):
        with pytest.raises(ValueError):
            finder_class_for("build.gradle")

    def test_missing_content(self):
        with pytest.raises(DependencyFileNotParseable):
            FilePatcher().apply(DependencyFile("package.json", None), [])


class TestLockMetadata:
    def test_poetry_lock_metadata(self):
        regenerated = POETRY_LOCK.replace('"^3.8"', '"^3.9"').replace("originalhash", "temphash")
        corrected = PoetryLockMetadata.correct(regenerated, POETRY_LOCK, "realhash")
        metadata = toml.loads(corrected)["metadata"]
        assert metadata["python-versions"] == "^3.8"
        assert metadata["content-hash"] == "realhash"

    def test_poetry_lock_without_hash(self):
        with pytest.raises(DependencyFileNotParseable):
            PoetryLockMetadata.replace_content_hash('[metadata]\npython-versions = "*"\n', "x")

    def test_pipfile_lock_hash(self):
        lockfile = json.dumps({"_meta": {"hash": {"sha256": "temphash"}}, "default": {}}, indent=4)
        assert json.loads(PipfileLockMetadata.replace_hash(lockfile, "realhash"))["_meta"]["hash"]["sha256"] == "realhash"

    def test_pipfile_lock_without_hash(self):
        with pytest.raises(DependencyFileNotParseable):
            PipfileLockMetadata.replace_hash("{}", "realhash")


class TestPyprojectPreparer:
    def test_freeze_all_but_updated(self):
        frozen = toml.loads(PyprojectPreparer(PYPROJECT, POETRY_LOCK).freeze_top_level_dependencies_except(["requests"]))
        dependencies = frozen["tool"]["poetry"]["dependencies"]
        assert dependencies["requests"] == "^2.25"
        assert dependencies["flask"]["version"] == "1.1.2"
        assert dependencies["django"]["version"] == "3.2.4"
        assert dependencies["python"] == "^3.8"

    def test_freeze_without_lockfile_is_noop(self):
        assert PyprojectPreparer(PYPROJECT).freeze_top_level_dependencies_except([]) == PYPROJECT

    def test_lock_dependency_versions(self):
        locked = toml.loads(PyprojectPreparer(PYPROJECT).lock_dependency_versions({"Requests": "2.26.0", "Flask": "2.0.1"}))
        dependencies = locked["tool"]["poetry"]["dependencies"]
        assert dependencies["requests"] == "2.26.0"
        assert dependencies["flask"]["version"] == "2.0.1"

    def test_update_python_requirement(self):
        updated = toml.loads(PyprojectPreparer(PYPROJECT).update_python_requirement("3.9.1"))
        assert updated["tool"]["poetry"]["dependencies"]["python"] == "3.9.1"
        assert PyprojectPreparer(PYPROJECT).update_python_requirement(None) == PYPROJECT

    def test_replace_sources_inserts_credentials(self):
        credentials = [Credential(type="python_index", index_url="https://pypi.example.com/simple", token="tok")]
        updated = toml.loads(PyprojectPreparer(PYPROJECT).replace_sources(credentials))
        assert updated["tool"]["poetry"]["source"] == [
            {"name": "dep-bumper-inserted-index-0", "url": "https://tok@pypi.example.com/simple"}
        ]

    def test_sanitize(self):
        assert PyprojectPreparer("").sanitize('version = "{{ VERSION }}"') == 'version = "something"'

    def test_invalid_toml(self):
        with pytest.raises(DependencyFileNotParseable):
            PyprojectPreparer("[tool.poetry\n").lock_dependency_versions({"a": "1"})


class TestPipfilePreparer:
    PIPFILE = '[packages]\nrequests = "*"\nflask = {version = "*", extras = ["dotenv"]}\n\n[requires]\npython_full_version = "3.8.5"\n'
    LOCKFILE = json.dumps(
        {
            "_meta": {"hash": {"sha256": "x"}},
            "default": {"requests": {"version": "==2.25.1"}, "flask": {"version": "==1.1.2"}},
            "develop": {},
        }
    )

    def test_freeze_all_but_updated(self):
        frozen = toml.loads(PipfilePreparer(self.PIPFILE, self.LOCKFILE).freeze_top_level_dependencies_except(["requests"]))
        assert frozen["packages"]["requests"] == "*"
        assert frozen["packages"]["flask"]["version"] == "==1.1.2"

    def test_python_full_version_is_replaced(self):
        updated = toml.loads(PipfilePreparer(self.PIPFILE).update_python_requirement("3.9"))
        assert updated["requires"] == {"python_version": "3.9"}


class TestHelpers:
    def test_normalise_python_name(self):
        assert normalise_python_name("Django_Rest.Framework") == "django-rest-framework"

    def test_authed_url(self):
        credential = Credential(
            type="python_index", index_url="https://old@pypi.example.com/simple", username="u", password="p"
        )
        assert authed_url(credential) == "https://u:p@pypi.example.com/simple"
        assert authed_url(Credential(type="python_index", index_url="https://x.org/")) == "https://x.org/"
