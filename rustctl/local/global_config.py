import tomllib
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import rustctl.settings as default_settings

log = logging.getLogger(__name__)


class GlobalSync:
    """
    A singleton class that houses all application configuration.

    It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from the environment / `.env` file (handled by `python-dotenv` in settings.py).
    3. Overrides from the TOML config file for settings in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """Initializes the settings object by loading defaults and the config file."""
        self._config: Dict[str, Any] = {}
        self._load_defaults()
        self._load_overrides_from_file(Path(config_path or self._config["CONFIG_FILE_PATH"]))
        self._coerce_path_objects()

    def get(self, item: str, default: Any = None) -> Any:
        """Provides dictionary-like access to settings with a default value."""
        return self._config.get(item, default)

    def __getattr__(self, name: str) -> Any:
        """Allows attribute access to settings, raising an AttributeError if not found."""
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._config:
            return self._config[name]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{name}'")

    def set(self, key: str, value: Any) -> None:
        """Sets a runtime value, e.g. from a command line flag."""
        self._config[key] = value

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from settings.py as the baseline."""
        for key in dir(default_settings):
            if key.isupper():
                self._config[key] = getattr(default_settings, key)

    def _load_overrides_from_file(self, config_path: Path) -> None:
        """
        Loads and applies settings from the TOML config file.

        Only keys listed in `MODIFIABLE_SETTINGS` are applied. Keys are matched
        case-insensitively, so `root_dir = "/srv/rust"` overrides ROOT_DIR.
        """
        if not config_path.exists():
            log.debug(f"No config file at '{config_path}'. Using defaults.")
            return

        try:
            with config_path.open("rb") as f:
                overrides = tomllib.load(f)
        except (tomllib.TOMLDecodeError, OSError) as e:
            log.error(f"Failed to load or parse config file '{config_path}': {e}")
            return

        log.info(f"Loading configuration overrides from {config_path}")
        for raw_key, value in overrides.items():
            key = raw_key.upper()
            if key not in self._config:
                log.warning(f"Config setting '{raw_key}' not found in default settings. Ignoring.")
                continue
            if key not in self._config["MODIFIABLE_SETTINGS"]:
                log.warning(f"Attempted to override non-modifiable setting '{raw_key}'. Ignoring.")
                continue
            self._config[key] = value
            log.debug(f"Overridden setting: {key} = {value}")

    def _coerce_path_objects(self) -> None:
        """Converts settings that should be Path objects from string to Path."""
        for key, value in self._config.items():
            default_value = getattr(default_settings, key, None)
            if isinstance(default_value, Path) and isinstance(value, str):
                self._config[key] = Path(value)

    def get_all_settings(self) -> Dict[str, Any]:
        """Returns the entire configuration dictionary."""
        return self._config

# A singleton instance to be imported by other modules
app_globals = GlobalSync()
