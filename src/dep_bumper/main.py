import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .cli_config import (
    UpdaterConfig,
    apply_config_section,
    create_sample_config,
    get_config,
    load_config_file,
    validate_config_values,
)
from .content_provider import REQUIRED_FILES, LocalDirectoryProvider, fetch_dependency_files
from .context import UpdateContext
from .dependency import Dependency, DependencyRequirement
from .exceptions import BadRequirement, DepBumperError, InvalidVersion
from .orchestrator import UpdateOrchestrator, UpdateOutcome, UpdateRequest, UpdateStatus
from .registry_clients import REGISTRY_CLIENTS, fetch_available_versions
from .requirements import UpdateStrategy, requirements_array, satisfied_by_any
from .structured_logging import configure_logging
from .versions import compare_versions, parse_version, supported_package_managers

console = Console()

PACKAGE_MANAGERS = click.Choice(supported_package_managers())
# ecosystems whose manifests can be fetched and rewritten
UPDATABLE_PACKAGE_MANAGERS = click.Choice(sorted(REQUIRED_FILES))


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version information")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Structured log level (defaults to the configured level)",
)
@click.pass_context
def cli(ctx, version, log_level):
    """
    🔄 Dep-Bumper: dependency update engine

    Finds the next version of a dependency, rewrites its manifest
    declarations and regenerates lockfiles with the ecosystem's own tools.
    """
    if version:
        console.print(f"Dep-Bumper version {__version__}", style="bold blue")
        ctx.exit()

    configure_logging(log_level or get_config().logging.structured_log_level)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _requirement_source(git_url: Optional[str], git_ref: Optional[str], git_branch: Optional[str]):
    if not git_url:
        return None
    return {"type": "git", "url": git_url, "ref": git_ref, "branch": git_branch}


def _fetch_registry_versions(package_manager: str, name: str) -> Optional[list]:
    if package_manager not in REGISTRY_CLIENTS:
        return None
    results = asyncio.run(fetch_available_versions(package_manager, [name]))
    result = results[name]
    if not result.found:
        console.print(f"⚠️  Could not list versions of {name}: {result.error}", style="yellow")
        return None
    return result.versions


def _print_outcome(outcome: UpdateOutcome) -> None:
    if outcome.status is UpdateStatus.FAILED:
        record = outcome.error_record
        console.print(
            f"❌ Update of {outcome.dependency_name} failed: {record.error_type if record else 'unknown_error'}",
            style="red",
        )
        if record and record.error_details:
            console.print_json(data=record.error_details)
        return

    if outcome.status is not UpdateStatus.UPDATED:
        reason = outcome.resolution.reason if outcome.resolution else None
        label = "up to date" if outcome.status is UpdateStatus.UP_TO_DATE else "undetermined"
        console.print(f"✅ {outcome.dependency_name} is {label}" + (f" ({reason})" if reason else ""))
        return

    updated = outcome.updated_dependency
    console.print(
        f"⬆️  {updated.name}: {updated.previous_version or '?'} → {updated.new_version}",
        style="bold green",
    )
    table = Table(title="Updated files")
    table.add_column("File", style="cyan")
    table.add_column("Kind")
    for file in updated.updated_files:
        table.add_row(file.path, "support" if file.support_file else "dependency file")
    console.print(table)


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--package-manager", "-p", type=UPDATABLE_PACKAGE_MANAGERS, required=True, help="Ecosystem of the dependency")
@click.option("--dependency", "-d", "name", required=True, help="Dependency name")
@click.option("--current-version", default=None, help="Currently locked or pinned version")
@click.option("--requirement", "-r", default=None, help="Requirement string as declared in the manifest")
@click.option("--file", "manifest", default=None, help="Manifest declaring the requirement")
@click.option("--subdirectory", default="/", show_default=True, help="Directory holding the manifests")
@click.option("--target-version", default=None, help="Update to this version instead of the latest")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in UpdateStrategy]),
    default=None,
    help="How requirements are rewritten (defaults to the configured strategy)",
)
@click.option(
    "--allow-prereleases/--no-allow-prereleases",
    default=None,
    help="Consider pre-release versions (defaults to the configured setting)",
)
@click.option("--ignore", "ignored", multiple=True, help="Version or requirement to skip (repeatable)")
@click.option("--git-url", default=None, help="Git repository the dependency is sourced from")
@click.option("--git-ref", default=None, help="Tag or commit the dependency is pinned to")
@click.option("--git-branch", default=None, help="Branch the dependency tracks")
@click.option("--output-dir", type=click.Path(file_okay=False), default=None, help="Write commit and pull request records here")
@click.option(
    "--output-format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format",
)
@click.option("--dry-run", is_flag=True, help="Do not record a commit or pull request")
def update(
    directory: str,
    package_manager: str,
    name: str,
    current_version: Optional[str],
    requirement: Optional[str],
    manifest: Optional[str],
    subdirectory: str,
    target_version: Optional[str],
    strategy: Optional[str],
    allow_prereleases: Optional[bool],
    ignored: Tuple[str, ...],
    git_url: Optional[str],
    git_ref: Optional[str],
    git_branch: Optional[str],
    output_dir: Optional[str],
    output_format: str,
    dry_run: bool,
):
    """Update one dependency in DIRECTORY."""
    provider = LocalDirectoryProvider(directory, output_dir=output_dir)
    try:
        files = fetch_dependency_files(provider, package_manager, subdirectory)
    except DepBumperError as e:
        console.print(f"❌ {e}", style="red")
        sys.exit(1)

    manifest_name = manifest or next((f.name for f in files if not f.support_file), files[0].name)
    requirements = ()
    if requirement is not None or git_url:
        requirements = (
            DependencyRequirement(
                file=manifest_name,
                requirement=requirement,
                source=_requirement_source(git_url, git_ref, git_branch),
            ),
        )
    dependency = Dependency(
        name=name, package_manager=package_manager, version=current_version, requirements=requirements
    )

    available = None
    if target_version is None and not git_url:
        available = _fetch_registry_versions(package_manager, name)

    context = UpdateContext()
    orchestrator = UpdateOrchestrator(context)
    request = UpdateRequest(
        dependency=dependency,
        dependency_files=files,
        available_versions=available,
        target_version=target_version,
        ignored_versions=list(ignored),
        allow_prereleases=allow_prereleases,
        strategy=strategy,
    )
    try:
        outcome = orchestrator.update(request)
    except DepBumperError as e:
        console.print(f"🛑 Job halted: {e}", style="bold red")
        sys.exit(2)

    if output_format.lower() == "json":
        click.echo(json.dumps(outcome.to_dict(), indent=2))
    else:
        _print_outcome(outcome)

    if outcome.updated and output_dir and not dry_run:
        updated = outcome.updated_dependency
        branch = f"dep-bumper/{package_manager}/{name}-{updated.new_version}"
        title = f"Bump {name} from {updated.previous_version} to {updated.new_version}"
        commit_id = provider.create_commit(branch, title, updated.updated_files)
        provider.create_pull_request(branch, title, "", commit_id, dependencies=[updated])
        if output_format.lower() != "json":
            console.print(f"📝 Recorded commit {commit_id[:12]} in {output_dir}", style="dim")

    if outcome.status is UpdateStatus.FAILED:
        sys.exit(1)


@cli.command("check-version")
@click.argument("package_manager", type=PACKAGE_MANAGERS)
@click.argument("version")
@click.argument("other", required=False)
def check_version(package_manager: str, version: str, other: Optional[str]):
    """Parse VERSION and optionally compare it with OTHER."""
    try:
        parsed = parse_version(package_manager, version)
    except InvalidVersion as e:
        console.print(f"❌ {e}", style="red")
        sys.exit(1)

    console.print(f"✅ {parsed} is a valid {package_manager} version", style="green")
    console.print(f"  Segments: {list(parsed.canonical_segments())}")
    console.print(f"  Pre-release: {parsed.prerelease}")

    if other is not None:
        try:
            result = compare_versions(package_manager, version, other)
        except (InvalidVersion, TypeError) as e:
            console.print(f"❌ Cannot compare: {e}", style="red")
            sys.exit(1)
        symbol = {-1: "<", 0: "==", 1: ">"}[result]
        console.print(f"  {version} {symbol} {other}")


@cli.command()
@click.argument("package_manager", type=PACKAGE_MANAGERS)
@click.argument("requirement")
@click.argument("version")
def satisfies(package_manager: str, requirement: str, version: str):
    """Exit 0 if VERSION satisfies REQUIREMENT, 1 otherwise."""
    try:
        matched = satisfied_by_any(requirements_array(package_manager, requirement), version)
    except (BadRequirement, InvalidVersion, ValueError) as e:
        console.print(f"❌ {e}", style="red")
        sys.exit(2)

    if matched:
        console.print(f"✅ {version} satisfies {requirement}", style="green")
    else:
        console.print(f"❌ {version} does not satisfy {requirement}", style="red")
        sys.exit(1)


@cli.command()
def info():
    """Show supported ecosystems and usage examples."""
    info_text = """
[bold blue]📦 Supported Ecosystems:[/bold blue]

• [green]npm_and_yarn[/green] - package.json with package-lock.json or yarn.lock
• [green]pip[/green] - requirements.txt, pyproject.toml + poetry.lock, Pipfile + Pipfile.lock
• [green]go_modules[/green] - go.mod and go.sum
• [green]bundler[/green] - Gemfile and Gemfile.lock
• [green]nuget[/green] - packages.config
• [green]submodules[/green] - git submodules

[bold blue]🧭 Versioning Strategies:[/bold blue]

• [yellow]bump_versions[/yellow] - Rewrite requirements to the new version
• [yellow]bump_versions_if_necessary[/yellow] - Only rewrite requirements the new version falls outside
• [yellow]widen_ranges[/yellow] - Widen ranges instead of replacing them
• [yellow]lockfile_only[/yellow] - Leave manifests alone

[bold blue]🌍 Environment Variables:[/bold blue]

• [cyan]DEP_BUMPER_TIMEOUT_PER_OPERATION[/cyan] - Native tool time limit in seconds
• [cyan]DEP_BUMPER_NATIVE_HELPERS_PATH[/cyan] - Root of native helper installations
• [cyan]DEP_BUMPER_VERSIONING_STRATEGY[/cyan] - Default versioning strategy
• [cyan]DEP_BUMPER_<REGISTRY>_TOKEN[/cyan] - Bearer token for a registry

[bold blue]💡 Usage Examples:[/bold blue]

  # Update lodash to the latest version
  dep-bumper update . -p npm_and_yarn -d lodash --current-version 4.17.20 -r ^4.17.20

  # Check a requirement
  dep-bumper satisfies npm_and_yarn "^1.2.3" 1.9.0

  # Compare two versions
  dep-bumper check-version bundler 1.0.0.pre 1.0.0
"""
    console.print(
        Panel(info_text, title="[bold]Dep-Bumper Information[/bold]", border_style="blue")
    )


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command("init")
@click.option(
    "--path",
    type=click.Path(),
    default=".dep-bumper.json",
    help="Path where to create the config file",
    show_default=True,
)
@click.option("--force", is_flag=True, help="Overwrite existing config file")
def config_init(path: str, force: bool):
    """Create a sample configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        console.print(f"⚠️  Config file already exists at {config_path}", style="yellow")
        console.print("Use --force to overwrite", style="dim")
        return

    try:
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(create_sample_config())
    except OSError as e:
        console.print(f"❌ Failed to create config file: {e}", style="red")
        sys.exit(1)

    console.print(f"✅ Created configuration file at {config_path}", style="green")


@config.command("show")
def config_show():
    """Show current configuration settings."""
    current = get_config()

    console.print(Panel("[bold blue]🔧 Configuration[/bold blue]", border_style="blue"))

    console.print("\n[bold cyan]⚙️  Subprocess Settings:[/bold cyan]")
    console.print(f"  Timeout per Operation: {current.subprocess.timeout_per_operation_seconds}s")
    console.print(
        f"  Timeout Bounds: [{current.subprocess.min_timeout_seconds}, {current.subprocess.max_timeout_seconds}]s"
    )
    console.print(f"  Environment Allow List: {', '.join(current.subprocess.env_allow_list)}")

    console.print("\n[bold cyan]🧰 Helper Settings:[/bold cyan]")
    console.print(f"  Native Helpers Path: {current.helpers.native_helpers_path or '(bundled)'}")
    console.print(f"  Temporary Root: {current.helpers.tmp_root or '/tmp/dep-bumper'}")

    console.print("\n[bold cyan]🔒 Security Settings:[/bold cyan]")
    console.print(f"  Max File Size: {current.security.max_file_size_mb} MB")
    console.print(f"  Redact Dependency Names: {current.security.redact_dependency_names}")

    console.print("\n[bold cyan]🌐 Network Settings:[/bold cyan]")
    for registry, url in current.network.registry_urls.items():
        console.print(f"  {registry}: {url}")
    console.print(f"  Timeout: {current.network.timeout}s")
    console.print(f"  Rate Limit: {current.network.rate_limit} req/s")

    console.print("\n[bold cyan]⬆️  Update Settings:[/bold cyan]")
    console.print(f"  Versioning Strategy: {current.update.versioning_strategy}")
    console.print(f"  Allow Pre-releases: {current.update.allow_prereleases}")

    console.print("\n[bold cyan]📝 Logging Settings:[/bold cyan]")
    console.print(f"  Log Level: {current.logging.log_level}")
    console.print(f"  Structured Log Level: {current.logging.structured_log_level}")


@config.command("validate")
@click.argument("config_file", type=click.Path(exists=True))
def config_validate(config_file: str):
    """Validate a configuration file."""
    config_data = load_config_file(Path(config_file))
    if config_data is None:
        console.print(f"❌ Could not load config from {config_file}", style="red")
        sys.exit(1)

    candidate = UpdaterConfig()
    for section_name, section_data in config_data.items():
        section = getattr(candidate, section_name, None)
        if section is None or not isinstance(section_data, dict):
            console.print(f"❌ Unknown config section: {section_name}", style="red")
            sys.exit(1)
        apply_config_section(section, section_data, section_name)

    errors = validate_config_values(candidate)
    if errors:
        console.print("❌ Configuration validation failed:", style="red")
        for error in errors:
            console.print(f"  • {error}", style="red")
        sys.exit(1)

    console.print(f"✅ Configuration file {config_file} is valid", style="green")


if __name__ == "__main__":
    cli()
