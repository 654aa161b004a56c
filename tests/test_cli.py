"""
CLI interface tests for dep-bumper.
Tests the command-line interface and main entry points.
"""

import json

import pytest
from click.testing import CliRunner

from dep_bumper.main import cli


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def pip_repo(tmp_path):
    root = tmp_path / "pip-repo"
    root.mkdir()
    (root / "requirements.txt").write_text("requests==2.25.1\nflask==1.1.2\n")
    return root


class TestCLIBasics:
    """Test basic CLI functionality."""

    def test_cli_help(self, cli_runner):
        """Test CLI help message."""
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "dep-bumper" in result.output.lower()

    def test_cli_version(self, cli_runner):
        """Test CLI version display."""
        result = cli_runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "1.0.0" in result.output

    def test_info_command(self, cli_runner):
        """Test the info command."""
        result = cli_runner.invoke(cli, ["info"])

        assert result.exit_code == 0
        assert "npm_and_yarn" in result.output
        assert "widen_ranges" in result.output


class TestVersionCommands:
    """Test check-version and satisfies."""

    def test_check_version_compares(self, cli_runner):
        """A pre-release sorts before its release."""
        result = cli_runner.invoke(cli, ["check-version", "bundler", "1.0.0.pre", "1.0.0"])

        assert result.exit_code == 0
        assert "1.0.0.pre < 1.0.0" in result.output

    def test_check_version_invalid(self, cli_runner):
        """Malformed versions exit non-zero."""
        result = cli_runner.invoke(cli, ["check-version", "pip", "not a version"])

        assert result.exit_code == 1

    def test_check_version_unknown_ecosystem(self, cli_runner):
        """Only supported package managers are accepted."""
        result = cli_runner.invoke(cli, ["check-version", "cobol", "1.0"])

        assert result.exit_code == 2

    @pytest.mark.parametrize(
        "requirement,version,exit_code",
        [
            ("^1.2.3", "1.9.0", 0),
            ("^1.2.3", "2.0.0", 1),
            ("latest", "1.0.0", 2),
        ],
    )
    def test_satisfies(self, cli_runner, requirement, version, exit_code):
        """Exit status reports the match."""
        result = cli_runner.invoke(cli, ["satisfies", "npm_and_yarn", requirement, version])

        assert result.exit_code == exit_code


class TestUpdateCommand:
    """Test the update command end to end on a requirements.txt project."""

    def test_update_with_target_version(self, cli_runner, pip_repo, tmp_path):
        """The manifest is rewritten and a commit record is written."""
        output_dir = tmp_path / "out"
        result = cli_runner.invoke(
            cli,
            [
                "update", str(pip_repo),
                "-p", "pip",
                "-d", "requests",
                "--current-version", "2.25.1",
                "-r", "==2.25.1",
                "--file", "requirements.txt",
                "--target-version", "2.26.0",
                "--output-dir", str(output_dir),
                "--output-format", "json",
            ],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["status"] == "updated"
        assert data["updated_dependency"]["new_version"] == "2.26.0"
        assert data["updated_dependency"]["new_requirements"][0]["requirement"] == "==2.26.0"

        commits = list((output_dir / "commits").glob("*.json"))
        assert len(commits) == 1
        commit = json.loads(commits[0].read_text())
        assert commit["files"][0]["content"] == "requests==2.26.0\nflask==1.1.2\n"
        assert commit["branch"] == "dep-bumper/pip/requests-2.26.0"
        assert len(list((output_dir / "pull_requests").glob("*.json"))) == 1

        # the working copy itself is never modified
        assert (pip_repo / "requirements.txt").read_text() == "requests==2.25.1\nflask==1.1.2\n"

    def test_dry_run_records_nothing(self, cli_runner, pip_repo, tmp_path):
        """--dry-run skips the commit and pull request records."""
        output_dir = tmp_path / "out"
        result = cli_runner.invoke(
            cli,
            [
                "update", str(pip_repo), "-p", "pip", "-d", "requests",
                "--current-version", "2.25.1", "-r", "==2.25.1",
                "--target-version", "2.26.0", "--output-dir", str(output_dir), "--dry-run",
            ],
        )

        assert result.exit_code == 0, result.output
        assert not output_dir.exists()

    def test_unchanged_requirement_fails(self, cli_runner, pip_repo):
        """A requirement that already allows the target leaves nothing to commit."""
        result = cli_runner.invoke(
            cli,
            [
                "update", str(pip_repo), "-p", "pip", "-d", "requests",
                "--current-version", "2.25.1", "-r", "==2.25.1",
                "--target-version", "2.26.0", "--strategy", "lockfile_only",
                "--output-format", "json",
            ],
        )

        assert result.exit_code == 1
        assert json.loads(result.output)["status"] == "failed"

    def test_missing_manifest(self, cli_runner, tmp_path):
        """A directory without the ecosystem's manifest is rejected."""
        empty = tmp_path / "empty"
        empty.mkdir()
        result = cli_runner.invoke(
            cli, ["update", str(empty), "-p", "go_modules", "-d", "golang.org/x/text", "--target-version", "v0.3.7"]
        )

        assert result.exit_code == 1

    def test_ecosystem_without_manifests(self, cli_runner, pip_repo):
        """Ecosystems with no fetchable manifests are a usage error, not a crash."""
        result = cli_runner.invoke(
            cli, ["update", str(pip_repo), "-p", "github_actions", "-d", "actions/checkout", "--target-version", "v4"]
        )

        assert result.exit_code == 2
        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert "github_actions" in result.output


class TestConfigCommands:
    """Test configuration management commands."""

    def test_config_init(self, cli_runner, tmp_path):
        """Test creating a sample config file."""
        path = tmp_path / "config.json"
        result = cli_runner.invoke(cli, ["config", "init", "--path", str(path)])

        assert result.exit_code == 0
        assert json.loads(path.read_text())["update"]["versioning_strategy"] == "bump_versions"

    def test_config_init_does_not_overwrite(self, cli_runner, tmp_path):
        """An existing file needs --force."""
        path = tmp_path / "config.json"
        path.write_text("{}")
        result = cli_runner.invoke(cli, ["config", "init", "--path", str(path)])

        assert result.exit_code == 0
        assert path.read_text() == "{}"

    def test_config_show(self, cli_runner):
        """Test showing the active configuration."""
        result = cli_runner.invoke(cli, ["config", "show"])

        assert result.exit_code == 0
        assert "bump_versions" in result.output

    def test_config_validate_valid(self, cli_runner, tmp_path):
        """Test validating a correct YAML config."""
        path = tmp_path / "config.yaml"
        path.write_text("update:\n  versioning_strategy: widen_ranges\nsubprocess:\n  min_timeout_seconds: 30\n")
        result = cli_runner.invoke(cli, ["config", "validate", str(path)])

        assert result.exit_code == 0

    def test_config_validate_invalid(self, cli_runner, tmp_path):
        """Test validating a config with a bad strategy."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"update": {"versioning_strategy": "yolo"}}))
        result = cli_runner.invoke(cli, ["config", "validate", str(path)])

        assert result.exit_code == 1
        assert "versioning_strategy" in result.output

    def test_config_validate_unknown_section(self, cli_runner, tmp_path):
        """Unknown top-level sections are rejected."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"telemetry": {}}))
        result = cli_runner.invoke(cli, ["config", "validate", str(path)])

        assert result.exit_code == 1
