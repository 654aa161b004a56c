"""
Configuration management for Dep-Bumper.

Settings come from a JSON or YAML file in one of the standard locations,
then from DEP_BUMPER_* environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from rich.console import Console

console = Console(stderr=True)


@dataclass
class SubprocessConfig:
    """Native tool invocation limits."""

    timeout_per_operation_seconds: int = 600
    min_timeout_seconds: int = 60
    max_timeout_seconds: int = 1800
    env_allow_list: List[str] = field(
        default_factory=lambda: ["PATH", "LANG", "LC_ALL", "TMPDIR", "USER"]
    )
    forwarded_env: List[str] = field(
        default_factory=lambda: [
            "HTTP_PROXY",
            "HTTPS_PROXY",
            "NO_PROXY",
            "http_proxy",
            "https_proxy",
            "no_proxy",
            "SSL_CERT_FILE",
            "REQUESTS_CA_BUNDLE",
            "NODE_EXTRA_CA_CERTS",
        ]
    )


@dataclass
class HelpersConfig:
    """Where native helper installations live."""

    native_helpers_path: Optional[str] = None
    tmp_root: Optional[str] = None


@dataclass
class SecurityConfig:
    """Limits applied to dependency files handled by the engine."""

    max_file_size_mb: int = 10
    redact_dependency_names: bool = True

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


@dataclass
class NetworkConfig:
    """Registry lookup configuration."""

    user_agent: str = "dep-bumper/1.0.0"
    registry_urls: Dict[str, str] = field(
        default_factory=lambda: {
            "pypi": "https://pypi.org/pypi",
            "npm": "https://registry.npmjs.org",
            "go": "https://proxy.golang.org",
            "rubygems": "https://rubygems.org",
            "nuget": "https://api.nuget.org/v3-flatcontainer",
        }
    )
    timeout: float = 30.0
    rate_limit: float = 10.0


@dataclass
class UpdateConfig:
    """How requirements are rewritten."""

    versioning_strategy: str = "bump_versions"
    allow_prereleases: bool = False
    ignored_versions: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    log_level: str = "WARNING"
    structured_log_level: str = "INFO"


@dataclass
class UpdaterConfig:
    """Main configuration containing all subsections."""

    subprocess: SubprocessConfig = field(default_factory=SubprocessConfig)
    helpers: HelpersConfig = field(default_factory=HelpersConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    update: UpdateConfig = field(default_factory=UpdateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


VALID_STRATEGIES = {"bump_versions", "bump_versions_if_necessary", "widen_ranges", "lockfile_only"}

# Global configuration instance
_global_config: Optional[UpdaterConfig] = None


def validate_config_values(config: UpdaterConfig) -> List[str]:
    """
    Validate configuration values and return any errors.

    Args:
        config: Configuration to validate

    Returns:
        List[str]: List of validation errors (empty if valid)
    """
    errors = []

    sub = config.subprocess
    if sub.min_timeout_seconds <= 0:
        errors.append("subprocess.min_timeout_seconds must be positive")
    if sub.min_timeout_seconds > sub.max_timeout_seconds:
        errors.append("subprocess.min_timeout_seconds must be <= max_timeout_seconds")
    if sub.timeout_per_operation_seconds < 0:
        errors.append("subprocess.timeout_per_operation_seconds must be non-negative")

    if config.security.max_file_size_mb <= 0:
        errors.append("security.max_file_size_mb must be positive")

    if config.network.timeout <= 0:
        errors.append("network.timeout must be positive")
    if config.network.rate_limit <= 0:
        errors.append("network.rate_limit must be positive")

    if config.update.versioning_strategy not in VALID_STRATEGIES:
        errors.append(
            f"update.versioning_strategy must be one of: {', '.join(sorted(VALID_STRATEGIES))}"
        )

    if config.helpers.native_helpers_path and not Path(config.helpers.native_helpers_path).is_absolute():
        errors.append("helpers.native_helpers_path must be an absolute path")

    return errors


def load_config_file(config_path: Path) -> Optional[Dict[str, Any]]:
    """Load config from file."""
    if not config_path.exists():
        return None

    try:
        with open(config_path, encoding="utf-8") as f:
            if config_path.suffix.lower() in [".yaml", ".yml"]:
                return yaml.safe_load(f)
            if config_path.suffix.lower() == ".json":
                return json.load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"⚠️  Error loading config from {config_path}: {e}", style="yellow")

    return None


def find_config_file() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [
        Path.cwd() / ".dep-bumper.json",
        Path.cwd() / ".dep-bumper.yaml",
        Path.cwd() / ".dep-bumper.yml",
        Path.home() / ".config" / "dep-bumper" / "config.json",
        Path.home() / ".config" / "dep-bumper" / "config.yaml",
    ]

    for location in locations:
        if location.exists():
            return location

    return None


def load_environment_overrides(config: UpdaterConfig) -> None:
    """Load environment variable overrides."""

    def get_env_bool(key: str, default: bool = False) -> bool:
        value = os.environ.get(key, "").lower()
        return value in ["true", "1", "yes", "on"] if value else default

    def get_env_int(key: str, default: Optional[int] = None) -> Optional[int]:
        try:
            return int(os.environ[key]) if key in os.environ else default
        except ValueError:
            console.print(f"⚠️  Invalid integer value for {key}, using default", style="yellow")
            return default

    timeout = get_env_int("DEP_BUMPER_TIMEOUT_PER_OPERATION")
    if timeout is not None:
        config.subprocess.timeout_per_operation_seconds = timeout

    if helpers_path := os.environ.get("DEP_BUMPER_NATIVE_HELPERS_PATH"):
        config.helpers.native_helpers_path = helpers_path
    if tmp_root := os.environ.get("DEP_BUMPER_TMP_ROOT"):
        config.helpers.tmp_root = tmp_root

    if strategy := os.environ.get("DEP_BUMPER_VERSIONING_STRATEGY"):
        config.update.versioning_strategy = strategy.lower()
    config.update.allow_prereleases = get_env_bool(
        "DEP_BUMPER_ALLOW_PRERELEASES", config.update.allow_prereleases
    )

    if user_agent := os.environ.get("DEP_BUMPER_USER_AGENT"):
        config.network.user_agent = user_agent
    for registry in list(config.network.registry_urls):
        if url := os.environ.get(f"DEP_BUMPER_{registry.upper()}_REGISTRY"):
            config.network.registry_urls[registry] = url

    if log_level := os.environ.get("DEP_BUMPER_LOG_LEVEL"):
        config.logging.log_level = log_level.upper()


def apply_config_section(config: Any, section_data: Dict[str, Any], section_name: str) -> None:
    """Apply configuration from dictionary to config section."""
    for key, value in section_data.items():
        if hasattr(config, key):
            if isinstance(getattr(config, key), dict) and isinstance(value, dict):
                getattr(config, key).update(value)
            else:
                setattr(config, key, value)
        else:
            console.print(f"⚠️  Unknown config key in {section_name}: {key}", style="yellow")


def load_config(config_path: Optional[Path] = None) -> UpdaterConfig:
    """Load configuration from file and environment."""
    global _global_config

    config = UpdaterConfig()

    config_file = config_path or find_config_file()
    if config_file:
        file_config = load_config_file(config_file)
        if file_config:
            for section_name in ("subprocess", "helpers", "security", "network", "update", "logging"):
                if section_name in file_config:
                    apply_config_section(
                        getattr(config, section_name), file_config[section_name], section_name
                    )

    load_environment_overrides(config)

    validation_errors = validate_config_values(config)
    if validation_errors:
        console.print("⚠️  Configuration validation errors:", style="red")
        for error in validation_errors:
            console.print(f"  • {error}", style="red")
        console.print("Using default values for invalid settings.", style="yellow")
        _restore_invalid_defaults(config, validation_errors)

    _global_config = config
    return config


def _restore_invalid_defaults(config: UpdaterConfig, errors: List[str]) -> None:
    defaults = UpdaterConfig()
    for error in errors:
        section_name, _, rest = error.partition(".")
        key = rest.split(" ", 1)[0]
        section = getattr(config, section_name, None)
        if section is not None and hasattr(section, key):
            setattr(section, key, getattr(getattr(defaults, section_name), key))


def get_config() -> UpdaterConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _global_config
    _global_config = None


def create_sample_config() -> str:
    """Generate a sample configuration file."""
    sample_config = {
        "subprocess": {
            "timeout_per_operation_seconds": 600,
            "min_timeout_seconds": 60,
            "max_timeout_seconds": 1800,
        },
        "helpers": {"native_helpers_path": None, "tmp_root": None},
        "security": {"max_file_size_mb": 10, "redact_dependency_names": True},
        "network": {
            "user_agent": "dep-bumper/1.0.0",
            "registry_urls": NetworkConfig().registry_urls,
            "timeout": 30.0,
            "rate_limit": 10.0,
        },
        "update": {
            "versioning_strategy": "bump_versions",
            "allow_prereleases": False,
            "ignored_versions": {},
        },
        "logging": {"log_level": "WARNING", "structured_log_level": "INFO"},
    }

    return json.dumps(sample_config, indent=2)
