"""
Reads, migrates and writes the player's INI configuration file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from termtune.exceptions import ConfigurationError
from termtune.models.config import PlayerConfig

log = logging.getLogger(__name__)

SECTION = "DEFAULT"

# Field annotation -> SectionProxy getter; anything else is read as a string.
_GETTERS = {bool: "getboolean", int: "getint", float: "getfloat"}


def _to_ini(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    # % starts an interpolation in configparser
    return str(value).replace("%", "%%")


def _build(values: dict[str, Any], **extra) -> PlayerConfig:
    try:
        return PlayerConfig(**values, **extra)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed:\n{e}") from e


class ConfigManager:
    """Owns one config.ini and turns it into a validated PlayerConfig."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path

    def load_config(
        self,
        cli_options: dict[str, Any] | None = None,
        require_file: bool = False,
    ) -> PlayerConfig:
        """
        Loads the file, layers non-None CLI options on top and validates the result.

        Without a file the model defaults are used, unless `require_file` is set.

        Raises:
            ConfigurationError: If the file cannot be parsed or a value is invalid.
        """
        values: dict[str, Any] = {}
        if self.config_file_path.is_file():
            parser = self._read()
            added = self._migrate(parser)
            if added:
                log.info(
                    f"[yellow]Added {len(added)} new setting(s) to "
                    f"{self.config_file_path.name}: {', '.join(added)}[/yellow]"
                )
            values = self._typed_values(parser[SECTION])
        elif require_file:
            raise ConfigurationError(
                f"Configuration file not found at '{self.config_file_path}'. "
                "Please run 'termtune init' first."
            )
        else:
            log.debug(f"No configuration file at '{self.config_file_path}', using defaults.")

        if cli_options:
            values.update((k, v) for k, v in cli_options.items() if v is not None)

        return _build(values, config_path=str(self.config_file_path.parent))

    def save_new_config(self, settings: dict[str, Any] | None = None) -> None:
        """Validates `settings` over the defaults and writes a complete config file."""
        config = _build(settings or {})

        parser = configparser.ConfigParser()
        parser[SECTION] = {
            key: _to_ini(getattr(config, key)) for key in sorted(PlayerConfig.get_ini_keys())
        }
        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            self._write(parser)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _read(self) -> configparser.ConfigParser:
        parser = configparser.ConfigParser()
        try:
            parser.read(self.config_file_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}") from e
        return parser

    def _write(self, parser: configparser.ConfigParser) -> None:
        with self.config_file_path.open("w", encoding="utf-8") as f:
            parser.write(f)

    @staticmethod
    def _typed_values(section: configparser.SectionProxy) -> dict[str, Any]:
        """Known keys only, converted by the model's field types."""
        values: dict[str, Any] = {}
        for key in PlayerConfig.get_ini_keys() & set(section):
            getter = _GETTERS.get(PlayerConfig.model_fields[key].annotation, "get")
            try:
                values[key] = getattr(section, getter)(key)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for '{key}' in configuration file: {e}"
                ) from e
        return values

    def _migrate(self, parser: configparser.ConfigParser) -> list[str]:
        """Writes defaults for settings the file predates. Returns the added keys."""
        section = parser[SECTION]
        defaults = PlayerConfig()
        added = [key for key in sorted(PlayerConfig.get_ini_keys()) if key not in section]
        if not added:
            return []

        for key in added:
            section[key] = _to_ini(getattr(defaults, key))
        try:
            self._write(parser)
        except OSError as e:
            log.error(f"Could not save migrated configuration file: {e}")
            return []
        return added
