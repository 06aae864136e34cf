"""Configuration loading and migration service.

Handles loading config.yaml and migrating older flat layouts to the
current schema.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from worktree_sessions.models.config import AppConfig

logger = logging.getLogger(__name__)

# Keys that used to live at the top level and now belong to the tmux section
_LEGACY_TMUX_KEYS = ("monitor_interval", "state_file", "auto_cleanup", "cleanup_age_hours")


class ConfigService:
    """Service for loading and managing application configuration.

    Handles:
    - Loading config from config.yaml
    - Validating against the Pydantic schema
    - Migrating legacy flat keys
    - Saving updated config
    """

    def __init__(self, config_path: str | Path = "config.yaml"):
        """Initialize the config service.

        Args:
            config_path: Path to the config file.
        """
        self.config_path = Path(config_path)
        self._config: AppConfig | None = None

    def load(self) -> AppConfig:
        """Load and validate configuration.

        Returns:
            Validated AppConfig instance. Defaults if the file is missing,
            unreadable or invalid.
        """
        if not self.config_path.exists():
            logger.info(f"Config file not found at {self.config_path}, using defaults")
            self._config = AppConfig()
            return self._config

        try:
            with open(self.config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Error reading config file: {e}, using defaults")
            self._config = AppConfig()
            return self._config

        if not isinstance(raw_config, dict):
            logger.warning(f"Config file {self.config_path} is not a mapping, using defaults")
            self._config = AppConfig()
            return self._config

        try:
            self._config = AppConfig.model_validate(self._migrate_config(raw_config))
        except ValidationError as e:
            logger.warning(f"Config validation error: {e}, using defaults")
            self._config = AppConfig()

        return self._config

    def get_config(self) -> AppConfig:
        """Get the current configuration, loading it on first use."""
        if self._config is None:
            return self.load()
        return self._config

    def reload(self) -> AppConfig:
        """Force reload configuration from disk."""
        self._config = None
        return self.load()

    def save(self, config: AppConfig | None = None) -> bool:
        """Save configuration to disk.

        Args:
            config: Config to save. Uses current config if not provided.

        Returns:
            True if save succeeded.
        """
        config = config or self._config
        if config is None:
            return False

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                yaml.safe_dump(config.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            logger.error(f"Error saving config: {e}")
            return False

        self._config = config
        return True

    def _migrate_config(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Move legacy top-level tmux keys into the tmux section.

        Values already present in the tmux section win over legacy ones.
        """
        migrated = dict(raw)
        tmux_raw = migrated.get("tmux") or {}
        if not isinstance(tmux_raw, dict):
            # Left for schema validation to reject
            return migrated
        tmux = dict(tmux_raw)

        for key in _LEGACY_TMUX_KEYS:
            if key in migrated:
                value = migrated.pop(key)
                if key in tmux:
                    logger.info(f"Ignoring legacy config field {key}, tmux.{key} is set")
                else:
                    logger.info(f"Migrating legacy config field {key} to tmux.{key}")
                    tmux[key] = value

        if tmux:
            migrated["tmux"] = tmux
        return migrated
