"""
Configuration management for provisio.

Operator settings live in $PROVISIO_HOME/config.yaml (default
~/.config/provisio/config.yaml). An optional env_file is loaded into the
process environment with python-dotenv before a run, so @env.* references in
manifests can see it.
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from provisio.errors import ConfigError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS = ("pretty", "structured")


def get_provisio_home() -> Path:
    """Config directory: $PROVISIO_HOME or ~/.config/provisio."""
    home = os.environ.get("PROVISIO_HOME")
    if home:
        return Path(home)
    return Path("~/.config/provisio").expanduser()


@dataclass
class ProvisioConfig:
    """
    Operator configuration.

    Attributes:
        default_timeout_s: Action timeout for steps that set none
        probe_timeout_s: Timeout for command and service probes
        grace_period_s: Time a cancelled action gets to stop
        max_backoff_s: Cap on the delay between retries
        runs_dir: Where finished run reports are journaled
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: "pretty" (rich) or "structured" (JSON lines)
        log_file: Optional log file
        env_file: Optional .env file loaded before runs
    """
    default_timeout_s: float = 600.0
    probe_timeout_s: float = 30.0
    grace_period_s: float = 10.0
    max_backoff_s: float = 300.0
    runs_dir: str = "~/.local/share/provisio/runs"
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def __post_init__(self):
        for name in ("default_timeout_s", "probe_timeout_s", "grace_period_s", "max_backoff_s"):
            value = getattr(self, name)
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ConfigError(f"{name} must be a number, got {value!r}")
            if value < 0 or (value == 0 and name != "grace_period_s"):
                raise ConfigError(f"{name} must be positive, got {value}")
            setattr(self, name, value)

        self.log_level = str(self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"Invalid log_level '{self.log_level}'. Valid: {list(LOG_LEVELS)}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"Invalid log_format '{self.log_format}'. Valid: {list(LOG_FORMATS)}")

    @property
    def runs_path(self) -> Path:
        return Path(self.runs_dir).expanduser()

    @property
    def log_path(self) -> Optional[Path]:
        return Path(self.log_file).expanduser() if self.log_file else None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProvisioConfig":
        """
        Build from a config mapping.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)


DEFAULT_CONFIG = ProvisioConfig()


def load_config(config_path: Optional[Path] = None) -> ProvisioConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Explicit path (default: $PROVISIO_HOME/config.yaml)

    Returns:
        ProvisioConfig

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the file is malformed or values are invalid
    """
    if config_path is None:
        config_path = get_provisio_home() / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"provisio config.yaml not found at {config_path}. Run 'provisio init' to create one."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    config = ProvisioConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if not env_path.is_absolute():
            env_path = config_path.parent / env_path
        if env_path.exists():
            load_dotenv(env_path)

    return config


def write_default_config(config_path: Optional[Path] = None, force: bool = False) -> Path:
    """
    Write a config.yaml with default values.

    Raises:
        FileExistsError: If the file exists and force is False
    """
    if config_path is None:
        config_path = get_provisio_home() / "config.yaml"
    config_path = Path(config_path)
    if config_path.exists() and not force:
        raise FileExistsError(f"Config already exists: {config_path}")

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(DEFAULT_CONFIG.to_dict(), f, sort_keys=False)
    return config_path
