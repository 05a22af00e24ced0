"""
Settle Configuration

Run settings resolved from defaults, the ``[defaults]`` table of a TOML
config file, environment variables and command-line flags (later sources
win).
"""

import dataclasses
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from settle.engine.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SETTLE_CONFIG"
ENV_PREFIX = "SETTLE_"
DEFAULT_CONFIG_FILE = "settle.toml"


@dataclass
class RunConfig:
    """
    Settings for a single run.

    Attributes:
        forks: Maximum number of hosts processed concurrently
        retries: Retry attempts for transient transport errors
        backoff_base: First retry delay in seconds (doubles each attempt)
        backoff_max: Upper bound for a single retry delay
        connect_timeout: Seconds allowed to establish a connection
        command_timeout: Seconds allowed for a single remote command
        gather_facts: Discover facts at play start unless the play opts out
        check_mode: Probe only, never apply
        color: Colorize console output
    """

    forks: int = 5
    retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    connect_timeout: float = 30.0
    command_timeout: float = 300.0
    gather_facts: bool = True
    check_mode: bool = False
    color: bool = True

    def __post_init__(self) -> None:
        if self.forks < 1:
            raise ConfigError(f"forks must be at least 1, got {self.forks}")
        if self.retries < 0:
            raise ConfigError(f"retries must not be negative, got {self.retries}")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigError("backoff values must not be negative")
        if self.connect_timeout <= 0 or self.command_timeout <= 0:
            raise ConfigError("timeouts must be positive")

    def replace(self, **changes: Any) -> "RunConfig":
        """Return a copy with the given (non-None) fields replaced."""
        changes = {k: v for k, v in changes.items() if v is not None}
        return dataclasses.replace(self, **changes)


def _coerce(name: str, raw: Any) -> Any:
    """Convert a setting (string from the environment, or a TOML value) to the field's type."""
    fields = {f.name: f for f in dataclasses.fields(RunConfig)}
    default = fields[name].default
    if not isinstance(raw, str):
        # TOML values are already typed; ints are fine where floats are wanted
        if isinstance(default, bool):
            valid = isinstance(raw, bool)
        elif isinstance(default, float):
            valid = isinstance(raw, (int, float)) and not isinstance(raw, bool)
        else:
            valid = isinstance(raw, type(default)) and not isinstance(raw, bool)
        if not valid:
            raise ConfigError(f"Invalid value for {name}: {raw!r}")
        return float(raw) if isinstance(default, float) else raw

    value = raw.strip()
    try:
        if isinstance(default, bool):
            lowered = value.lower()
            if lowered in ('1', 'true', 'yes', 'on'):
                return True
            if lowered in ('0', 'false', 'no', 'off'):
                return False
            raise ValueError(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except ValueError:
        raise ConfigError(f"Invalid value for {name}: {raw!r}")
    return value


def _field_names() -> set:
    return {f.name for f in dataclasses.fields(RunConfig)}


def read_config_file(path: Path) -> Dict[str, Any]:
    """Read the [defaults] table of a TOML config file."""
    try:
        data = tomllib.loads(path.read_text(encoding='utf-8'))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")

    defaults = data.get('defaults', {})
    if not isinstance(defaults, dict):
        raise ConfigError(f"[defaults] in {path} must be a table")

    settings: Dict[str, Any] = {}
    known = _field_names()
    for key, raw in defaults.items():
        if key not in known:
            logger.warning("Ignoring unknown setting %r in %s", key, path)
            continue
        settings[key] = _coerce(key, raw)
    return settings


def read_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect SETTLE_<FIELD> overrides from the environment."""
    settings: Dict[str, Any] = {}
    for name in _field_names():
        env_name = ENV_PREFIX + name.upper()
        if env_name in environ:
            settings[name] = _coerce(name, environ[env_name])
    return settings


def find_config_file(
    explicit: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[Path]:
    """Locate the config file: --config, then $SETTLE_CONFIG, then ./settle.toml."""
    environ = os.environ if environ is None else environ
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        return path
    if environ.get(CONFIG_ENV_VAR):
        return Path(environ[CONFIG_ENV_VAR])
    local = Path.cwd() / DEFAULT_CONFIG_FILE
    if local.is_file():
        return local
    return None


def load_config(
    config_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> RunConfig:
    """
    Resolve the run configuration.

    Args:
        config_file: Explicit config file path (--config)
        environ: Environment mapping (defaults to os.environ)
        **overrides: CLI values; None means "not given"

    Returns:
        RunConfig
    """
    environ = os.environ if environ is None else environ
    settings: Dict[str, Any] = {}

    path = find_config_file(config_file, environ)
    if path is not None:
        logger.debug("Loading config from %s", path)
        settings.update(read_config_file(path))

    settings.update(read_environment(environ))
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return RunConfig(**settings)
