"""Configuration management for the hedger.

Settings live in ``config/settings.yaml`` next to the package, optionally
overridden key by key from an untracked ``settings.local.yaml``.  A string
value that is exactly ``${VAR}`` or ``${VAR:default}`` is replaced from the
environment once ``.env`` has been loaded; a reference buried inside a
longer string is rejected rather than silently left in place.
"""

import os
import re
from pathlib import Path
from typing import Any, cast

import yaml
from dotenv import load_dotenv

_DEFAULT_DIR = Path(__file__).parent.parent / "config"
_BASE_FILE = "settings.yaml"
_LOCAL_FILE = "settings.local.yaml"
_WHOLE_REFERENCE = re.compile(r"^\$\{(?P<name>[^}:]+)(?::(?P<default>[^}]*))?\}$")
_ANY_REFERENCE = re.compile(r"\$\{[^}]+\}")


class ConfigError(Exception):
    """Raise when settings cannot be read or resolved."""


def _read_settings(path: Path) -> dict[str, Any]:
    """Parse one settings file, treating a missing or empty file as ``{}``.

    Raises:
        ConfigError: If the document is not a mapping.

    """
    if not path.exists():
        return {}
    with path.open() as f:
        loaded: Any = yaml.safe_load(f)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        msg = f"{path.name} must contain a mapping, got {type(loaded).__name__}"
        raise ConfigError(msg)
    return cast("dict[str, Any]", loaded)


def _overlay(base: dict[str, Any], local: dict[str, Any]) -> None:
    """Copy ``local`` onto ``base`` in place, descending into nested mappings."""
    for key, value in local.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _overlay(cast("dict[str, Any]", current), cast("dict[str, Any]", value))
        else:
            base[key] = value


def _resolve(value: Any) -> Any:
    """Replace environment references throughout a parsed settings tree.

    Args:
        value: A mapping, list or scalar from the YAML document.

    Returns:
        The same structure with every ``${VAR[:default]}`` string resolved.

    Raises:
        ConfigError: If a variable is unset without a default, or a
            reference is embedded in a longer string.

    """
    if isinstance(value, dict):
        mapping = cast("dict[str, Any]", value)
        return {key: _resolve(item) for key, item in mapping.items()}
    if isinstance(value, list):
        return [_resolve(item) for item in cast("list[Any]", value)]
    if not isinstance(value, str):
        return value

    match = _WHOLE_REFERENCE.match(value)
    if match is not None:
        name = match.group("name")
        resolved = os.getenv(name, match.group("default"))
        if resolved is None:
            msg = f"Required environment variable ${{{name}}} is not set and has no default"
            raise ConfigError(msg)
        return resolved
    if _ANY_REFERENCE.search(value):
        msg = f"Unresolved environment variable reference in: {value}"
        raise ConfigError(msg)
    return value


class ConfigLoader:
    """Resolved settings read from a config directory.

    Args:
        config_dir: Directory holding ``settings.yaml``.  Defaults to the
            package's ``config`` directory.

    """

    def __init__(self, config_dir: Path | None = None) -> None:
        load_dotenv()
        self.config_dir = Path(config_dir) if config_dir is not None else _DEFAULT_DIR
        settings = _read_settings(self.config_dir / _BASE_FILE)
        _overlay(settings, _read_settings(self.config_dir / _LOCAL_FILE))
        self._config: dict[str, Any] = _resolve(settings)

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a value by dotted path, e.g. ``hedger.bid_size``.

        Args:
            key: Dotted path into the settings tree.
            default: Returned when any part of the path is missing or null.

        Returns:
            The configured value or ``default``.

        """
        node: Any = self._config
        for part in key.split("."):
            if not isinstance(node, dict):
                return default
            node = cast("dict[str, Any]", node).get(part)
            if node is None:
                return default
        return node

    def get_section(self, name: str) -> dict[str, Any]:
        """Return a top-level section such as ``hedger`` or ``polymarket``.

        An absent section is an empty dict.

        Raises:
            ConfigError: If the section exists but is not a mapping.

        """
        section: Any = self.get(name, {})
        if not isinstance(section, dict):
            msg = f"{name} config must be a dict, got {type(section).__name__}"
            raise ConfigError(msg)
        return cast("dict[str, Any]", section)


_config: ConfigLoader | None = None


def get_config() -> ConfigLoader:
    """Return the process-wide ``ConfigLoader``, reading settings on first call."""
    global _config  # noqa: PLW0603
    if _config is None:
        _config = ConfigLoader()
    return _config
