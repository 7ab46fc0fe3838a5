import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import node_manager.settings as default_settings

log = logging.getLogger(__name__)


class MergedSettings:
    """
    Attribute access to every setting, with the node directories overridable.

    Precedence, lowest first:
    1. Values from `settings.py`, including the root directory resolved from
       the environment or `.env`.
    2. Directory overrides from `config.json`, limited to `MODIFIABLE_SETTINGS`.

    Only directories the user actually changed are written to `config.json`.
    Directories left alone keep following the resolved root directory, so moving
    the root (e.g. onto another drive) moves them too.
    """

    def __init__(self, overrides_path: Optional[Path] = None) -> None:
        """
        :param overrides_path: Alternative location of the overrides file.
        """
        self.overrides: Dict[str, Path] = {}
        self._load_defaults()
        if overrides_path is not None:
            self.OVERRIDES_JSON_PATH = Path(overrides_path)
        self._load_overrides()

    def _load_defaults(self) -> None:
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    def _load_overrides(self) -> None:
        """
        Applies the directory overrides stored in `config.json`.

        Unknown keys, non-modifiable keys and values that are not path strings
        are logged and skipped; the rest of the file still applies.
        """
        if not self.OVERRIDES_JSON_PATH.exists():
            return

        try:
            with self.OVERRIDES_JSON_PATH.open('r', encoding='utf-8') as f:
                stored = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return
        if not isinstance(stored, dict):
            log.error(f"Overrides file '{self.OVERRIDES_JSON_PATH}' does not contain an object. Ignoring.")
            return

        log.info(f"Loading directory overrides from {self.OVERRIDES_JSON_PATH}")
        for key, value in stored.items():
            if not (key.isupper() and hasattr(default_settings, key)):
                log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
            elif key not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
            elif not isinstance(value, str) or not value.strip():
                log.warning(f"Override for '{key}' is not a directory path ({value!r}). Ignoring.")
            else:
                self._apply(key, value)

    def _apply(self, key: str, value: str) -> Path:
        path = Path(value.strip()).expanduser()
        setattr(self, key, path)
        self.overrides[key] = path
        log.debug(f"Overridden setting: {key} = {path}")
        return path

    def update_setting(self, key: str, value: str) -> Path:
        """
        Points a node directory somewhere else and persists the change.

        :param key: One of `MODIFIABLE_SETTINGS`.
        :param value: The new directory; `~` is expanded.
        :return: The directory now in effect.
        :raises KeyError: If the setting is not modifiable.
        :raises ValueError: If the value is empty.
        """
        if key not in self.MODIFIABLE_SETTINGS:
            raise KeyError(f"Setting '{key}' is not modifiable.")
        if not value or not value.strip():
            raise ValueError(f"A directory path is required for '{key}'.")
        path = self._apply(key, value)
        self.save_overrides(self.overrides)
        return path

    def reset_setting(self, key: str) -> Path:
        """
        Drops the override of a node directory, returning it to the default.

        :param key: One of `MODIFIABLE_SETTINGS`.
        :return: The default directory now in effect.
        :raises KeyError: If the setting is not modifiable.
        """
        if key not in self.MODIFIABLE_SETTINGS:
            raise KeyError(f"Setting '{key}' is not modifiable.")
        default = getattr(default_settings, key)
        setattr(self, key, default)
        if self.overrides.pop(key, None) is not None:
            self.save_overrides(self.overrides)
        return default

    def save_overrides(self, overrides_to_save: Dict[str, Any]) -> None:
        """
        Atomically writes the given directory overrides to `config.json`.

        Keys outside `MODIFIABLE_SETTINGS` are dropped. With nothing left to
        store the file is removed, so every directory follows the root again.

        :param overrides_to_save: Setting names mapped to directories.
        """
        filtered_overrides = {
            key: str(value)
            for key, value in overrides_to_save.items()
            if key in self.MODIFIABLE_SETTINGS
        }

        if not filtered_overrides:
            self.OVERRIDES_JSON_PATH.unlink(missing_ok=True)
            log.info(f"No directory overrides left. Removed {self.OVERRIDES_JSON_PATH}")
            return

        self.OVERRIDES_JSON_PATH.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.OVERRIDES_JSON_PATH.with_suffix(".tmp")
        try:
            with temp_path.open('w', encoding='utf-8') as f:
                json.dump(filtered_overrides, f, indent=4, sort_keys=True)
            temp_path.replace(self.OVERRIDES_JSON_PATH)
            log.info(f"Directory overrides saved to {self.OVERRIDES_JSON_PATH}")
        except OSError as e:
            log.error(f"Failed to write to overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            raise
        finally:
            temp_path.unlink(missing_ok=True)


# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
