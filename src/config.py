"""User defaults for hashi-up, kept in a YAML file"""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".hashi-up"

DEFAULTS = {
    "target": {
        "user": "root",
        "ssh_key": "~/.ssh/id_rsa",
        "ssh_port": 22,
    },
    "consul": {
        "datacenter": "dc1",
        "version": "",
    },
}


class ConfigManager:
    """
    Reads option defaults from config.yaml

    Keys are addressed with dot notation, e.g. ``target.ssh_port``. A missing
    file is not an error: the built-in defaults apply.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_file = self.config_dir / "config.yaml"
        self._config = None

    def load_config(self) -> dict:
        if not self.config_file.exists():
            logger.debug(f"No config file at {self.config_file}, using defaults")
            self._config = {}
            return self._config

        logger.debug(f"Loading config from {self.config_file}")
        try:
            with open(self.config_file, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{self.config_file} is not valid YAML: {e}") from e

        if not isinstance(loaded, dict):
            raise ConfigurationError(f"{self.config_file} must contain a mapping")

        self._config = loaded
        return self._config

    def save_config(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w") as f:
            yaml.dump(self._config or {}, f, default_flow_style=False, sort_keys=False)
        logger.debug(f"Saved config to {self.config_file}")

    @staticmethod
    def _lookup(tree: dict, keys) -> Any:
        value = tree
        for k in keys:
            if not isinstance(value, dict) or k not in value:
                return None
            value = value[k]
        return value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a value, falling back to built-in defaults and then to default

        Args:
            key: Dot-notation key
            default: Returned when neither the file nor the defaults have it
        """
        if self._config is None:
            self.load_config()

        keys = key.split(".")
        for source in (self._config, DEFAULTS):
            value = self._lookup(source, keys)
            if value is not None:
                return value
        return default

    def set(self, key: str, value: Any) -> None:
        if self._config is None:
            self.load_config()

        keys = key.split(".")
        current = self._config
        for k in keys[:-1]:
            current = current.setdefault(k, {})
        current[keys[-1]] = value

        self.save_config()
        logger.debug(f"Set config {key} = {value}")
