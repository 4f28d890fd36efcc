"""config.yaml loading, the process-wide config singleton, and hot reload.

The API server and the CLI call get_config(). The scheduled sweep calls
reload_config_if_changed() first, so edits to the file (new accounts, a
different snoozed folder) apply without a restart. A broken edit is logged
and ignored; the last good config stays active.
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from inboxzero.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from inboxzero.core.errors import ConfigLoadError, ConfigValidationError
from inboxzero.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "INBOXZERO_CONFIG_PATH"

_ERROR_TEMPLATES = {
    "missing": "Missing required field '{loc}'",
    "extra_forbidden": "Unknown field '{loc}'",
}


@dataclass
class _Loaded:
    config: AppConfig
    path: Path
    mtime: float


_lock = threading.Lock()
_loaded: _Loaded | None = None


def config_path() -> Path:
    """$INBOXZERO_CONFIG_PATH, else config/config.yaml."""
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _describe(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        template = _ERROR_TEMPLATES.get(err["type"], "Field '{loc}': {msg}")
        lines.append("  - " + template.format(loc=loc, msg=err["msg"]))
    return "\n".join(lines)


def _read_mapping(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigLoadError(
            f"Configuration file not found: {path} "
            "(copy config/config.yaml.example to get started)"
        ) from None
    except OSError as e:
        raise ConfigLoadError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"{path} must contain a YAML mapping, not {type(data).__name__}")
    return data


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a config file. Never touches the singleton.

    Raises:
        ConfigLoadError: If the file is missing, unreadable or not a YAML mapping
        ConfigValidationError: If the contents fail schema validation
    """
    path = path or config_path()
    data = _read_mapping(path)

    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid configuration in {path}:\n{_describe(e)}") from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{path} declares schema_version {config.schema_version}, newer than "
            f"{CURRENT_SCHEMA_VERSION} which this inboxzero release understands"
        )

    logger.info(
        "config_loaded",
        path=str(path),
        accounts=len(config.accounts),
        sweep_enabled=config.deferral.sweep_enabled,
    )
    return config


def get_config() -> AppConfig:
    """The active config, loaded from disk on first use.

    Raises:
        ConfigLoadError: On first use, if the file cannot be read
        ConfigValidationError: On first use, if the file is invalid
    """
    global _loaded
    with _lock:
        if _loaded is None:
            path = config_path()
            config = load_config(path)
            _loaded = _Loaded(config=config, path=path, mtime=path.stat().st_mtime)
        return _loaded.config


def reload_config_if_changed() -> bool:
    """Swap in a fresh config if the file's mtime moved.

    Returns:
        True only when a new, valid config became active
    """
    with _lock:
        if _loaded is None:
            return False

        try:
            mtime = _loaded.path.stat().st_mtime
        except OSError as e:
            logger.warning("config_stat_failed", path=str(_loaded.path), error=str(e))
            return False
        if mtime <= _loaded.mtime:
            return False

        # Record the mtime either way so a broken file is reported once
        _loaded.mtime = mtime
        try:
            _loaded.config = load_config(_loaded.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_rejected", path=str(_loaded.path), error=str(e))
            return False

        logger.info("config_reloaded", path=str(_loaded.path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file for the validate-config command.

    Returns:
        (is_valid, human-readable summary or error)
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    deferral = config.deferral
    sweep_state = "enabled" if deferral.sweep_enabled else "disabled"
    return True, (
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - database: {config.database.path}\n"
        f"  - {len(config.accounts)} linked mailbox accounts\n"
        f"  - sweep every {deferral.sweep_interval_minutes} minutes ({sweep_state})\n"
        f"  - snoozed folder: {deferral.snoozed_folder}"
    )


def reset_config() -> None:
    """Drop the singleton so the next get_config() reads from disk."""
    global _loaded
    with _lock:
        _loaded = None
