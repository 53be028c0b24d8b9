"""
dockwatch Configuration Management.

Handles loading, saving, and validating configuration from various sources:
- Default values
- Configuration files (TOML)
- Environment variables
- Command-line arguments
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, List

import tomllib

import tomli_w
import yaml

logger = logging.getLogger(__name__)


# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "dockwatch"
DEFAULT_CONFIG_FILE = "config.toml"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "dockwatch"

# Interval bounds for per-user batch job configuration (one minute to one day)
MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 1440

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class ValidationError:
    """Validation error for configuration."""
    field: str
    message: str
    severity: str  # "error" or "warning"

    def __str__(self) -> str:
        return f"[{self.severity.upper()}] {self.field}: {self.message}"


@dataclass
class SchedulerConfig:
    """Configuration for the batch scheduler and the intent evaluator."""

    # Scheduler settings
    enabled: bool = True
    check_interval: int = 30  # seconds between batch job due-ness checks

    # Intent evaluation
    intent_check_interval: int = 60  # seconds
    intent_startup_delay: int = 10  # seconds before the first evaluation

    # Failure handling
    failure_cooldown: int = 60  # seconds until a failed job is due again
    stale_run_minutes: int = 60  # running rows older than this are taken over

    # Job defaults
    default_interval_minutes: int = 60
    disabled_job_types: List[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[Path] = None


@dataclass
class DockwatchConfig:
    """Main configuration container for dockwatch."""

    # Paths
    config_dir: Path = DEFAULT_CONFIG_DIR
    data_dir: Path = DEFAULT_DATA_DIR

    # Sub-configurations
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Database
    database_url: str = ""

    def __post_init__(self):
        """Initialize derived values."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/dockwatch.db"


def load_config(
    config_path: Optional[Path] = None,
    env_prefix: str = "DOCKWATCH_"
) -> DockwatchConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file
    3. Default values

    Args:
        config_path: Path to config file (default: ~/.config/dockwatch/config.toml)
        env_prefix: Prefix for environment variables

    Returns:
        Loaded configuration
    """
    config = DockwatchConfig()

    # Determine config file path
    if config_path is None:
        env_config_dir = os.environ.get(f"{env_prefix}CONFIG_DIR")
        if env_config_dir:
            config_path = Path(env_config_dir) / DEFAULT_CONFIG_FILE
        else:
            config_path = DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE

    if config_path.exists():
        config = _load_from_file(config_path, config)

    # Override with environment variables
    config = _load_from_env(config, env_prefix)

    return config


def _load_from_file(path: Path, config: DockwatchConfig) -> DockwatchConfig:
    """Load configuration from a TOML file."""
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Failed to load config from {path}: {e}")
        return config

    if "scheduler" in data:
        for key, value in data["scheduler"].items():
            if hasattr(config.scheduler, key):
                setattr(config.scheduler, key, value)

    if "logging" in data:
        for key, value in data["logging"].items():
            if key == "file":
                config.logging.file = Path(value) if value else None
            elif hasattr(config.logging, key):
                setattr(config.logging, key, value)

    # Top-level settings
    if "config_dir" in data:
        config.config_dir = Path(data["config_dir"])
    if "data_dir" in data:
        config.data_dir = Path(data["data_dir"])
        if "database_url" not in data:
            config.database_url = f"sqlite:///{config.data_dir}/dockwatch.db"
    if "database_url" in data:
        config.database_url = data["database_url"]

    return config


def _load_from_env(config: DockwatchConfig, prefix: str) -> DockwatchConfig:
    """Load configuration from environment variables."""

    # Scheduler settings
    if env_val := os.environ.get(f"{prefix}SCHEDULER_ENABLED"):
        config.scheduler.enabled = env_val.lower() in _TRUE_VALUES
    if env_val := os.environ.get(f"{prefix}CHECK_INTERVAL"):
        config.scheduler.check_interval = int(env_val)
    if env_val := os.environ.get(f"{prefix}INTENT_CHECK_INTERVAL"):
        config.scheduler.intent_check_interval = int(env_val)
    if env_val := os.environ.get(f"{prefix}FAILURE_COOLDOWN"):
        config.scheduler.failure_cooldown = int(env_val)
    if env_val := os.environ.get(f"{prefix}STALE_RUN_MINUTES"):
        config.scheduler.stale_run_minutes = int(env_val)
    if env_val := os.environ.get(f"{prefix}DISABLED_JOB_TYPES"):
        config.scheduler.disabled_job_types = [
            item.strip() for item in env_val.split(",") if item.strip()
        ]

    # Logging settings
    if env_val := os.environ.get(f"{prefix}LOG_LEVEL"):
        config.logging.level = env_val.upper()

    # Paths
    if env_val := os.environ.get(f"{prefix}CONFIG_DIR"):
        config.config_dir = Path(env_val)
    if env_val := os.environ.get(f"{prefix}DATA_DIR"):
        config.data_dir = Path(env_val)
        if not os.environ.get(f"{prefix}DATABASE_URL"):
            config.database_url = f"sqlite:///{config.data_dir}/dockwatch.db"
    if env_val := os.environ.get(f"{prefix}DATABASE_URL"):
        config.database_url = env_val

    return config


def save_config(config: DockwatchConfig, path: Optional[Path] = None) -> None:
    """
    Save configuration to a TOML file.

    Args:
        config: Configuration to save
        path: Path to save to (default: config.config_dir / config.toml)
    """
    if path is None:
        path = config.config_dir / DEFAULT_CONFIG_FILE

    path.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "config_dir": str(config.config_dir),
        "data_dir": str(config.data_dir),
        "database_url": config.database_url,
        "scheduler": {
            "enabled": config.scheduler.enabled,
            "check_interval": config.scheduler.check_interval,
            "intent_check_interval": config.scheduler.intent_check_interval,
            "intent_startup_delay": config.scheduler.intent_startup_delay,
            "failure_cooldown": config.scheduler.failure_cooldown,
            "stale_run_minutes": config.scheduler.stale_run_minutes,
            "default_interval_minutes": config.scheduler.default_interval_minutes,
            "disabled_job_types": list(config.scheduler.disabled_job_types),
        },
        "logging": {
            "level": config.logging.level,
            "format": config.logging.format,
        },
    }
    if config.logging.file:
        data["logging"]["file"] = str(config.logging.file)

    with open(path, "wb") as f:
        f.write(b"# dockwatch configuration\n# Generated automatically - edit with care\n\n")
        tomli_w.dump(data, f)


def ensure_directories(config: DockwatchConfig) -> None:
    """Ensure all required directories exist."""
    config.config_dir.mkdir(parents=True, exist_ok=True)
    config.data_dir.mkdir(parents=True, exist_ok=True)


def get_default_config() -> DockwatchConfig:
    """Get the default configuration."""
    return DockwatchConfig()


# Global configuration instance (lazy-loaded)
_global_config: Optional[DockwatchConfig] = None


def get_config() -> DockwatchConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def set_config(config: DockwatchConfig) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config


def clear_config_cache() -> None:
    """Clear the global configuration cache."""
    global _global_config
    _global_config = None


def set_config_value(section: str, key: str, value: Any, config_path: Optional[Path] = None) -> None:
    """
    Set a single configuration value and persist to file.

    Args:
        section: Configuration section (e.g., 'scheduler', 'logging')
        key: Configuration key within the section
        value: Value to set (will be converted to appropriate type)
        config_path: Path to config file (default: DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE)

    Raises:
        ValueError: If the section or key is unknown, or the value does not convert
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE

    config = load_config(config_path)

    section_obj = getattr(config, section, None)
    if section_obj is None or not hasattr(section_obj, "__dataclass_fields__"):
        raise ValueError(f"Unknown configuration section: {section}")

    if not hasattr(section_obj, key):
        raise ValueError(f"Unknown configuration key: {section}.{key}")

    current_value = getattr(section_obj, key)
    current_type = type(current_value)

    # Convert value to appropriate type
    if current_type == bool:
        converted_value = str(value).lower() in _TRUE_VALUES
    elif current_type == int:
        converted_value = int(value)
    elif current_type == float:
        converted_value = float(value)
    elif current_type == list:
        converted_value = [item.strip() for item in str(value).split(",") if item.strip()]
    elif key == "file":
        converted_value = Path(value) if value else None
    else:
        converted_value = value

    setattr(section_obj, key, converted_value)

    save_config(config, config_path)


def validate_config(config: Optional[DockwatchConfig] = None) -> List[ValidationError]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate (default: loaded from file)

    Returns:
        List of validation errors (empty if valid)
    """
    if config is None:
        config = load_config()

    errors: List[ValidationError] = []
    scheduler = config.scheduler

    # Poll intervals must be positive
    for name in ("check_interval", "intent_check_interval"):
        value = getattr(scheduler, name)
        if value < 1:
            errors.append(ValidationError(
                field=f"scheduler.{name}",
                message=f"Must be at least 1 second, got {value}",
                severity="error"
            ))

    if scheduler.intent_startup_delay < 0:
        errors.append(ValidationError(
            field="scheduler.intent_startup_delay",
            message=f"Must not be negative, got {scheduler.intent_startup_delay}",
            severity="error"
        ))

    if scheduler.failure_cooldown < 0:
        errors.append(ValidationError(
            field="scheduler.failure_cooldown",
            message=f"Must not be negative, got {scheduler.failure_cooldown}",
            severity="error"
        ))

    if scheduler.stale_run_minutes < 1:
        errors.append(ValidationError(
            field="scheduler.stale_run_minutes",
            message=f"Must be at least 1 minute, got {scheduler.stale_run_minutes}",
            severity="error"
        ))

    if not MIN_INTERVAL_MINUTES <= scheduler.default_interval_minutes <= MAX_INTERVAL_MINUTES:
        errors.append(ValidationError(
            field="scheduler.default_interval_minutes",
            message=(
                f"Must be between {MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES}, "
                f"got {scheduler.default_interval_minutes}"
            ),
            severity="error"
        ))

    # A cooldown longer than the poll interval is fine, but one longer than
    # the smallest job interval means a failed job waits a full interval
    if scheduler.failure_cooldown > scheduler.default_interval_minutes * 60:
        errors.append(ValidationError(
            field="scheduler.failure_cooldown",
            message="Failure cooldown exceeds the default job interval",
            severity="warning"
        ))

    if config.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(ValidationError(
            field="logging.level",
            message=f"Unknown log level: {config.logging.level}",
            severity="error"
        ))

    # Path validation
    if not config.config_dir.exists():
        errors.append(ValidationError(
            field="config_dir",
            message=f"Config directory does not exist: {config.config_dir}",
            severity="warning"
        ))

    if not config.data_dir.exists():
        errors.append(ValidationError(
            field="data_dir",
            message=f"Data directory does not exist: {config.data_dir}",
            severity="warning"
        ))

    try:
        if config.data_dir.exists():
            test_file = config.data_dir / ".write_test"
            test_file.touch()
            test_file.unlink()
    except (PermissionError, OSError):
        errors.append(ValidationError(
            field="data_dir",
            message=f"Data directory is not writable: {config.data_dir}",
            severity="error"
        ))

    return errors


def _config_to_dict(config: DockwatchConfig, mask_secrets: bool = True) -> dict[str, Any]:
    """
    Convert configuration to dictionary.

    Args:
        config: Configuration to convert
        mask_secrets: If True, mask credentials embedded in the database URL

    Returns:
        Dictionary representation of config
    """
    def mask_url(url: str) -> str:
        """Mask the password part of a database URL."""
        if not mask_secrets or "@" not in url or "://" not in url:
            return url
        scheme, rest = url.split("://", 1)
        credentials, host = rest.rsplit("@", 1)
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:****@{host}"

    return {
        "config_dir": str(config.config_dir),
        "data_dir": str(config.data_dir),
        "database_url": mask_url(config.database_url),
        "scheduler": {
            "enabled": config.scheduler.enabled,
            "check_interval": config.scheduler.check_interval,
            "intent_check_interval": config.scheduler.intent_check_interval,
            "intent_startup_delay": config.scheduler.intent_startup_delay,
            "failure_cooldown": config.scheduler.failure_cooldown,
            "stale_run_minutes": config.scheduler.stale_run_minutes,
            "default_interval_minutes": config.scheduler.default_interval_minutes,
            "disabled_job_types": list(config.scheduler.disabled_job_types),
        },
        "logging": {
            "level": config.logging.level,
            "format": config.logging.format,
            "file": str(config.logging.file) if config.logging.file else None,
        },
    }


def export_config_yaml(config: DockwatchConfig, mask_secrets: bool = True) -> str:
    """
    Export configuration as YAML string.

    Args:
        config: Configuration to export
        mask_secrets: If True, mask sensitive values

    Returns:
        YAML string representation of config
    """
    config_dict = _config_to_dict(config, mask_secrets)
    return yaml.dump(config_dict, default_flow_style=False, sort_keys=False, allow_unicode=True)


def export_config_json(config: DockwatchConfig, mask_secrets: bool = True) -> str:
    """
    Export configuration as JSON string.

    Args:
        config: Configuration to export
        mask_secrets: If True, mask sensitive values

    Returns:
        JSON string representation of config
    """
    config_dict = _config_to_dict(config, mask_secrets)
    return json.dumps(config_dict, indent=2)
