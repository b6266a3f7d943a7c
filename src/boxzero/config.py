"""Configuration loader for the BoxZero triage engine.

Loads config.yaml, validates it against the Pydantic schema and keeps the
result in a process-wide singleton. A missing file at the default location
is not an error: the engine runs on documented defaults. A missing file at
an explicitly requested path is.

Usage:
    from boxzero.config import get_config, reload_config_if_changed

    config = get_config()

    # Check for changes and reload (call each triage cycle)
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from boxzero.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from boxzero.core.errors import ConfigLoadError, ConfigValidationError
from boxzero.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV_VAR = "BOXZERO_CONFIG_PATH"

_config_lock = threading.Lock()
_current_config: AppConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def _get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get(CONFIG_PATH_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into actionable messages.

    Args:
        error: Pydantic ValidationError

    Returns:
        Formatted error message with specific field errors
    """
    messages = []
    for err in error.errors():
        # e.g. "trust.stages.training_wheels.min_approval_rate"
        field_path = ".".join(str(loc) for loc in err["loc"]) or "<root>"
        msg = err["msg"]
        err_type = err["type"]

        if err_type == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        elif err_type in ("float_type", "float_parsing"):
            messages.append(f"  - Field '{field_path}' must be a number")
        elif err_type in ("int_type", "int_parsing"):
            messages.append(f"  - Field '{field_path}' must be an integer")
        elif err_type.startswith(("greater_than", "less_than")):
            messages.append(f"  - Field '{field_path}' is out of range: {msg}")
        else:
            messages.append(f"  - Field '{field_path}': {msg}")

    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file.

    Args:
        path: Path to YAML file

    Returns:
        Parsed YAML as dictionary

    Raises:
        ConfigLoadError: If file not found or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}, "
            f"or unset {CONFIG_PATH_ENV_VAR} to run on defaults"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Configuration file must be a YAML mapping, got {type(data).__name__}")
    return data


def _validate_config(data: dict[str, Any], path: Path | str) -> AppConfig:
    """Validate config data against the Pydantic schema.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        error_details = _format_validation_errors(e)
        raise ConfigValidationError(f"Configuration validation failed for {path}:\n{error_details}") from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade boxzero or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Always reads from disk. For cached access use get_config().

    Args:
        path: Optional path to config file. If not provided, uses
              BOXZERO_CONFIG_PATH or the default location. A missing
              file at the default location yields the default config.

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigLoadError: If an explicitly requested file cannot be loaded
        ConfigValidationError: If validation fails
    """
    explicit = path is not None or CONFIG_PATH_ENV_VAR in os.environ
    config_path = path or _get_config_path()

    if not explicit and not config_path.exists():
        logger.info("config_defaults_used", path=str(config_path))
        return AppConfig()

    logger.debug("config_loading", path=str(config_path))

    data = _load_yaml(config_path)
    config = _validate_config(data, config_path)

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        llm_model=config.llm.model,
        max_concurrent_llm=config.ensemble.max_concurrent_llm,
    )
    return config


def get_config() -> AppConfig:
    """Get the current configuration singleton.

    Loads from disk on the first call and returns the cached config after.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    global _current_config, _config_path, _config_mtime

    with _config_lock:
        if _current_config is None:
            _config_path = _get_config_path()
            _current_config = load_config(_config_path if _config_path.exists() else None)
            _config_mtime = _config_path.stat().st_mtime if _config_path.exists() else 0.0

        return _current_config


def reload_config_if_changed() -> bool:
    """Reload the singleton if the config file changed on disk.

    Returns:
        True if config was reloaded, False if unchanged

    Behavior:
        - If config file unchanged or absent: returns False
        - If config file changed and valid: updates singleton, returns True
        - If config file changed but invalid: keeps old config, logs WARNING, returns False
    """
    global _current_config, _config_mtime

    with _config_lock:
        if _config_path is None:
            return False

        try:
            current_mtime = _config_path.stat().st_mtime
        except OSError:
            return False

        if current_mtime <= _config_mtime:
            return False

        logger.info("config_changed", path=str(_config_path))

        try:
            new_config = load_config(_config_path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_failed", path=str(_config_path), error=str(e))
            # Don't retry the same broken file on every check
            _config_mtime = current_mtime
            return False

        _current_config = new_config
        _config_mtime = current_mtime
        logger.info("config_reloaded", path=str(_config_path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without loading it into the singleton.

    Returns:
        Tuple of (is_valid, message)
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    stages = config.trust.stages
    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - LLM model: {config.llm.model} (timeout {config.llm.request_timeout_seconds:g}s)\n"
        f"  - LLM fallback threshold: {config.ensemble.llm_fallback_threshold:.2f}\n"
        f"  - Max concurrent LLM calls: {config.ensemble.max_concurrent_llm}\n"
        f"  - Trust stages: {len(stages)}",
    )


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config, _config_path, _config_mtime
    with _config_lock:
        _current_config = None
        _config_path = None
        _config_mtime = 0.0
