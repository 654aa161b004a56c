"""
Shared fixtures for dep-bumper tests.
"""

import json
import os
from pathlib import Path

import pytest

from dep_bumper.cli_config import UpdaterConfig, reset_config
from dep_bumper.context import UpdateContext
from dep_bumper.dependency import Dependency, DependencyFile, DependencyRequirement
from dep_bumper.error_handling import ErrorHandler
from dep_bumper.subprocess_runner import SubprocessResult, SubprocessRunner


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep user config files and DEP_BUMPER_* variables out of every test."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for key in [k for k in os.environ if k.startswith("DEP_BUMPER_")]:
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config():
    """Defaults with a one second timeout floor so tests can hit the limit quickly."""
    cfg = UpdaterConfig()
    cfg.subprocess.min_timeout_seconds = 1
    return cfg


@pytest.fixture
def context(tmp_path, config):
    return UpdateContext(job_id="test-job", tmp_root=tmp_path / "job", config=config)


@pytest.fixture
def runner(context):
    return SubprocessRunner(context)


@pytest.fixture
def error_handler():
    return ErrorHandler(logger_name="dep_bumper.tests")


@pytest.fixture
def package_json():
    return DependencyFile(
        name="package.json",
        content=json.dumps(
            {
                "name": "example",
                "version": "1.0.0",
                "dependencies": {"lodash": "^4.17.20", "left-pad": "1.0.0"},
                "devDependencies": {"jest": "~26.0.0"},
            },
            indent=2,
        )
        + "\n",
    )


@pytest.fixture
def lodash_dependency():
    return Dependency(
        name="lodash",
        package_manager="npm_and_yarn",
        version="4.17.20",
        requirements=(
            DependencyRequirement(file="package.json", requirement="^4.17.20", groups=("dependencies",)),
        ),
    )


@pytest.fixture
def requirements_txt():
    return DependencyFile(
        name="requirements.txt",
        content="requests==2.25.1\nflask>=1.0,<2.0  # web\nDjango_Rest-framework==3.12.0\n",
    )


@pytest.fixture
def sample_repo(tmp_path):
    """A checked-out repository with an npm project and a local path dependency."""
    root = tmp_path / "repo"
    (root / "packages" / "shared").mkdir(parents=True)
    (root / "package.json").write_text(
        json.dumps(
            {
                "name": "app",
                "dependencies": {"lodash": "^4.17.20", "shared": "file:./packages/shared"},
            },
            indent=2,
        )
    )
    (root / "package-lock.json").write_text(json.dumps({"lockfileVersion": 2, "dependencies": {}}))
    (root / "packages" / "shared" / "package.json").write_text(
        json.dumps({"name": "shared", "version": "0.1.0"})
    )
    (root / ".npmrc").write_text("registry=https://registry.npmjs.org\n")
    return root


class RecordingRunner(SubprocessRunner):
    """
    Stands in for the native tools.

    Records every command and runs ``effect(cwd, command)`` in place of the
    real process; helper calls answer from ``helper_results``.
    """

    def __init__(self, context, effect=None, helper_results=None):
        super().__init__(context)
        self.effect = effect
        self.helper_results = dict(helper_results or {})
        self.commands = []
        self.fingerprints = []
        self.environments = []
        self.helper_calls = []

    def run(self, command, cwd=None, env_overrides=None, timeout_seconds=None, fingerprint=None,
            allow_unsafe_shell_command=False, stdin_data=None):
        self.commands.append(command)
        self.fingerprints.append(fingerprint)
        self.environments.append(dict(env_overrides or {}))
        if self.effect:
            self.effect(Path(cwd), command)
        return SubprocessResult(fingerprint or "", 0, "", "", 0)

    def run_helper_subprocess(self, command, function, args, **kwargs):
        self.helper_calls.append((command, function, args))
        return self.helper_results[function]


@pytest.fixture
def recording_runner(context):
    return RecordingRunner(context)
