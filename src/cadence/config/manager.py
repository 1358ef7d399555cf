"""Locate, read and write the Cadence TOML config file."""

from __future__ import annotations

import copy
import logging
import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import ValidationError

from cadence.config.defaults import DEFAULT_CONFIG
from cadence.config.schema import CadenceConfig
from cadence.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_CONFIG_DIR = "CADENCE_CONFIG_DIR"
CONFIG_FILENAME = "config.toml"


def default_config_dir() -> Path:
    """``$CADENCE_CONFIG_DIR``, else ``$XDG_CONFIG_HOME/cadence``, else ``~/.config/cadence``."""
    override = os.environ.get(ENV_CONFIG_DIR)
    if override:
        return Path(override).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "cadence"


class ConfigManager:
    """File-backed store for :class:`CadenceConfig`.

    Reading never fails: a missing, unreadable or invalid file gives the
    defaults (with a warning for the last two). Unknown sections are
    dropped. Writes replace the file atomically.
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        self._config_dir = Path(config_dir) if config_dir else default_config_dir()

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    def get_config_path(self) -> Path:
        return self._config_dir / CONFIG_FILENAME

    def exists(self) -> bool:
        return self.get_config_path().is_file()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def load(self) -> CadenceConfig:
        """Return the config on disk laid over the defaults."""
        raw = self._read()
        if raw is None:
            return CadenceConfig()
        try:
            return CadenceConfig.model_validate(_deep_merge(DEFAULT_CONFIG, raw))
        except ValidationError as exc:
            logger.warning(
                "Invalid config at %s (%d errors), using defaults: %s",
                self.get_config_path(),
                exc.error_count(),
                exc,
            )
            return CadenceConfig()

    def get_value(self, key: str) -> Any:
        """Return the effective value of ``section.field``.

        Raises:
            ConfigError: If no such key exists.
        """
        section, name = self._split_key(key)
        return self.load().model_dump()[section][name]

    def _read(self) -> dict[str, Any] | None:
        path = self.get_config_path()
        if not path.is_file():
            logger.debug("No config file at %s, using defaults", path)
            return None
        try:
            raw = tomllib.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Cannot read config at %s, using defaults: %s", path, exc)
            return None

        unknown = sorted(set(raw) - set(DEFAULT_CONFIG))
        if unknown:
            logger.warning("Ignoring unknown config sections in %s: %s", path, ", ".join(unknown))
        return {key: value for key, value in raw.items() if key in DEFAULT_CONFIG}

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def save(self, config: CadenceConfig) -> Path:
        """Write *config* as TOML and return the file path.

        The file is written beside its target and renamed over it, so a
        crash never leaves half a config. It is readable by the owner only.
        """
        path = self.get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        # mkstemp creates the file with mode 0600
        fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".toml", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                tomli_w.dump(config.model_dump(), fh)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("Config saved to %s", path)
        return path

    def set_value(self, key: str, value: str) -> CadenceConfig:
        """Set ``section.field`` from its command-line form and save.

        The string is coerced by the field's type, so ``"250"``, ``"yes"``
        and ``"2.5"`` become an int, a bool and a float.

        Raises:
            ConfigError: For an unknown key or a value the field rejects.
        """
        section, name = self._split_key(key)
        data = self.load().model_dump()
        data[section][name] = value
        try:
            config = CadenceConfig.model_validate(data)
        except ValidationError as exc:
            reason = exc.errors()[0]["msg"]
            raise ConfigError(f"Invalid value for {key}: {value!r} ({reason})") from exc
        self.save(config)
        return config

    @staticmethod
    def _split_key(key: str) -> tuple[str, str]:
        section, _, name = key.partition(".")
        fields = DEFAULT_CONFIG.get(section)
        if fields is None or name not in fields:
            raise ConfigError(f"Unknown config key: {key}", {"key": key})
        return section, name


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *base* with *override* laid over it, section by section."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged
