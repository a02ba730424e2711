"""
config.py - Tool configuration and settings.

Values are addressed with dot notation (``config.get("adb.server_port")``)
and deep-merged over ``DEFAULT_CONFIG`` so older files pick up new keys.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger("deploy_toolkit.config")

DEFAULT_CONFIG = {
    "adb": {
        "server_host": "127.0.0.1",
        "server_port": 5037,
        "adb_path": "",
        "timeout_seconds": 30,
    },
    "usbmux": {
        # Empty means the platform default (/var/run/usbmuxd or 127.0.0.1:27015)
        "address": "",
        "timeout_seconds": 10,
        # Holds <major.minor>/DeveloperDiskImage.dmg(.signature); empty downloads one
        "developer_image_dir": "",
    },
    "host": {
        "install_dir": "",
        "debug_server": "",
    },
    "build": {
        "parallelism": 0,
        "build_dir": "target/deploy",
    },
    "debug": {
        "connect_timeout": 10.0,
        "grace_period": 3.0,
        "remote_port": 0,
        "lldb_server": "",
    },
    "logging": {
        "dir": "logs",
        "level": "INFO",
    },
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of *base* with *override* merged in; nested dicts merge key by key."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = deep_merge(current, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def lookup(data: Dict[str, Any], key: str, default: Any = None) -> Any:
    """Dot-notation lookup into nested dicts (``"debug.grace_period"``)."""
    node: Any = data
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


class Config:
    """Tool configuration, persisted as JSON under the user's home."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else (
            Path.home() / ".deploy_toolkit" / "config.json"
        )
        self._data: Dict[str, Any] = {}
        self.load()

    def load(self):
        """Read the file, or write the defaults out on first run."""
        if not self.config_path.exists():
            self._data = copy.deepcopy(DEFAULT_CONFIG)
            self.save()
            return
        try:
            stored = json.loads(self.config_path.read_text(encoding="utf-8"))
            if not isinstance(stored, dict):
                raise ValueError("top level is not an object")
        except (OSError, ValueError) as exc:
            log.warning("Ignoring %s (%s); using defaults", self.config_path, exc)
            self._data = copy.deepcopy(DEFAULT_CONFIG)
            return
        # Files from older versions pick up keys added since
        self._data = deep_merge(DEFAULT_CONFIG, stored)
        log.info("Config loaded from %s", self.config_path)

    def save(self):
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(
                json.dumps(self._data, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as exc:
            log.warning("Could not write %s: %s", self.config_path, exc)

    def get(self, key: str, default: Any = None) -> Any:
        return lookup(self._data, key, default)

    def set(self, key: str, value: Any):
        """Set a dot-notation key, creating intermediate sections, and save."""
        *parents, leaf = key.split(".")
        node = self._data
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[leaf] = value
        self.save()
