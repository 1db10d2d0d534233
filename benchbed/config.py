"""
Configuration management for benchbed.

Loads an optional benchbed.yaml configuration file:

    logging:
      output: logs/benchbed-{date}.log   # omit for no log file
      level: INFO
      format: pretty                     # or structured
      console: true
    display:
      live: true                         # render the live progress display
      ident_args: 2                      # arguments shown in a process label
    templates:
      output: build                      # overrides the bed's `output`
      includes: [templates]              # overrides the bed's `includes`
    behavior:
      fail_fast: false                   # stop at the first failing program

The progress file path comes from the BENCHBED_PROGRESS environment
variable, read once when the configuration loads.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_NAME = "benchbed.yaml"
PROGRESS_ENV_VAR = "BENCHBED_PROGRESS"

_SECTIONS = ("logging", "display", "templates", "behavior")


class BenchbedConfig:
    """Complete benchbed configuration."""

    def __init__(self, raw_config: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = raw_config or {}

        for section in _SECTIONS:
            value = self.raw_config.get(section, {})
            if value is None:
                value = {}
            if not isinstance(value, dict):
                raise ConfigError(f"Section '{section}' must be a mapping")
            setattr(self, section, value)

        progress = os.environ.get(PROGRESS_ENV_VAR)
        self.progress_file: Optional[Path] = Path(progress) if progress else None

    @classmethod
    def from_file(cls, config_path: Path) -> "BenchbedConfig":
        """Load and parse a YAML configuration file."""
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ConfigError("Configuration file must contain a mapping")
        return cls(config, config_path)

    def _relative(self, value: Any) -> Path:
        path = Path(str(value)).expanduser()
        if path.is_absolute() or self.config_path is None:
            return path
        return self.config_path.parent / path

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with date interpolation (None for no log file)."""
        log_output = self.logging.get("output")
        if not log_output:
            return None
        log_output = str(log_output).replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return self._relative(log_output)

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return bool(self.logging.get("console", True))

    def use_live_display(self) -> bool:
        return bool(self.display.get("live", True))

    def get_ident_args(self) -> Optional[int]:
        """Number of arguments shown in a process label (None shows all)."""
        value = self.display.get("ident_args")
        return int(value) if value is not None else None

    def get_template_output(self) -> Optional[Path]:
        value = self.templates.get("output")
        return self._relative(value) if value else None

    def get_template_includes(self) -> Optional[List[Path]]:
        value = self.templates.get("includes")
        if value is None:
            return None
        if isinstance(value, str):
            value = [value]
        return [self._relative(path) for path in value]

    def should_fail_fast(self) -> bool:
        """Check if the run should stop at the first failing program."""
        return bool(self.behavior.get("fail_fast", False))

    def validate(self) -> None:
        """Validate configuration values."""
        if self.get_log_format() not in ("structured", "pretty"):
            raise ConfigError(f"Unknown log format: {self.get_log_format()}")

        level = self.get_log_level()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Unknown log level: {level}")

        ident_args = self.display.get("ident_args")
        if ident_args is not None:
            try:
                if int(ident_args) < 0:
                    raise ValueError
            except (TypeError, ValueError):
                raise ConfigError(f"display.ident_args must be a non-negative integer, got {ident_args!r}")

        includes = self.templates.get("includes")
        if includes is not None and not isinstance(includes, (str, list)):
            raise ConfigError("templates.includes must be a path or a list of paths")

    def __repr__(self) -> str:
        return f"BenchbedConfig(path={self.config_path}, progress_file={self.progress_file})"


def load_config(config_path: Optional[Path] = None) -> BenchbedConfig:
    """
    Load benchbed configuration from a YAML file.

    Args:
        config_path: Path to config file. Defaults to ./benchbed.yaml when
            present, else built-in defaults

    Returns:
        BenchbedConfig instance

    Raises:
        ConfigError: If config is invalid, or an explicit path is missing
    """
    if config_path is None:
        default = Path.cwd() / DEFAULT_CONFIG_NAME
        if not default.exists():
            config = BenchbedConfig()
            config.validate()
            return config
        config_path = default

    config = BenchbedConfig.from_file(Path(config_path))
    config.validate()
    return config
