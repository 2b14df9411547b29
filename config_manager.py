"""
Configuration management for the halftone application.
Handles loading, saving, and managing user preferences.
"""

import copy
import json
import logging
import os
from typing import Any, Optional, Dict
from pathlib import Path

__all__ = [
    'ConfigManager',
]

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manages application configuration and user preferences."""

    DEFAULT_PATH = os.path.join(os.path.expanduser("~"), ".halftone_pie.json")

    DEFAULT_CONFIG = {
        # Default halftone settings (wire keys, overridden by job configs)
        "defaults": {
            "dotType": "circle",
            "effectType": "scale",
            "color": "#000000",
            "colorMode": "solid",
            "gradientAngle": 90,
            "smoothing": False,
            "trim": False
        },

        # Last used paths
        "paths": {
            "last_image_dir": None,
            "last_save_dir": None
        },

        # Recent files (keep last 10)
        "recent_files": []
    }

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize config manager.

        Args:
            config_file: Path to config file (defaults to ~/.halftone_pie.json)
        """
        self.config_file = config_file or self.DEFAULT_PATH
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """Load config from file, or create default if not exists."""
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Error loading config %s: %s", self.config_file, e)
                return copy.deepcopy(self.DEFAULT_CONFIG)
            if not isinstance(loaded, dict):
                logger.warning("Ignoring config %s: top level is not an object", self.config_file)
                return copy.deepcopy(self.DEFAULT_CONFIG)
            # Merge with defaults to handle new settings
            return self._merge_configs(copy.deepcopy(self.DEFAULT_CONFIG), loaded)
        else:
            self.config = copy.deepcopy(self.DEFAULT_CONFIG)
            self.save()
            return self.config

    def _merge_configs(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded config with defaults.
        Ensures all default keys exist even if not in loaded config; extra
        loaded keys are kept, so users can pin any halftone option.
        """
        for key, value in loaded.items():
            if isinstance(default.get(key), dict) and isinstance(value, dict):
                default[key] = self._merge_configs(default[key], value)
            else:
                default[key] = value
        return default

    def save(self):
        """Save current config to file."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            logger.warning("Error saving config %s: %s", self.config_file, e)

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get config value by nested keys.

        Args:
            *keys: Nested keys (e.g., "defaults", "dotType")
            default: Default value if key not found

        Returns:
            Config value or default

        Example:
            config.get("defaults", "dotType")  # Returns "circle"
        """
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *keys: str, value: Any):
        """
        Set config value by nested keys.

        Example:
            config.set("defaults", "dotType", value="square")
        """
        if len(keys) == 0:
            return

        current = self.config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get_halftone_defaults(self) -> Dict[str, Any]:
        """Copy of the preferred halftone options (wire keys)."""
        return dict(self.get("defaults", default={}))

    def update_last_path(self, path_type: str, filepath: str):
        """
        Update last used directory for a path type.

        Args:
            path_type: "image" or "save"
            filepath: File path to extract directory from
        """
        if filepath:
            directory = str(Path(filepath).parent)
            self.set("paths", f"last_{path_type}_dir", value=directory)

    def get_last_path(self, path_type: str) -> Optional[str]:
        """Get last used directory for a path type ("image" or "save")."""
        return self.get("paths", f"last_{path_type}_dir")

    def add_recent_file(self, filepath: str, max_recent: int = 10):
        """
        Add file to recent files list.

        Args:
            filepath: File path to add
            max_recent: Maximum number of recent files to keep
        """
        recent = list(self.get("recent_files", default=[]))

        if filepath in recent:
            recent.remove(filepath)

        recent.insert(0, filepath)
        self.set("recent_files", value=recent[:max_recent])

    def get_recent_files(self, max_count: int = 10) -> list:
        """
        Get list of recent files that still exist.

        Args:
            max_count: Maximum number to return

        Returns:
            List of file paths
        """
        recent = self.get("recent_files", default=[])
        existing = [f for f in recent if os.path.exists(f)]
        return existing[:max_count]

    def clear_recent_files(self):
        """Clear all recent files."""
        self.set("recent_files", value=[])
