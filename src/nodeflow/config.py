"""Configuration management for nodeflow.

Configuration Discovery Precedence (Highest to Lowest Priority):
===============================================================

1. **NODEFLOW_CONFIG_DIR Environment Variable** (Highest Priority)
   - Looks for: `${NODEFLOW_CONFIG_DIR}/nodeflow.yaml`
   - Use case: Development, testing, custom deployments

2. **~/.nodeflow Directory** (Fallback)
   - Looks for: `~/.nodeflow/nodeflow.yaml`
   - Use case: Default user installations

If no `nodeflow.yaml` is found, default configuration is applied.
Individual settings can also come from `NODEFLOW_*` environment
variables (e.g. `NODEFLOW_STRICT_CHAINS=true`); values in the YAML file
take precedence over the environment.

Example `nodeflow.yaml`:

    nodeflow:
      debug: false
      filter_order: [country, tag, protocol, name, performance]
      stage_overrides: "-dedupe_nodes"
      strict_chains: false
      random_seed: null
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from nodeflow.errors import RuleConfigError
from nodeflow.rules import FilterStage, validate_filter_order

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "nodeflow.yaml"
CONFIG_DIR_ENV = "NODEFLOW_CONFIG_DIR"


class NodeflowConfig(BaseSettings):
    """Main configuration for nodeflow that reads from nodeflow.yaml."""

    model_config = SettingsConfigDict(
        env_prefix="NODEFLOW_",
        case_sensitive=False,
        extra="ignore",
    )

    debug: bool = False
    """Enable debug logging"""

    filter_order: tuple[FilterStage, ...] | None = None
    """Filter stage order for subscriptions that do not set their own"""

    stage_overrides: str = ""
    """Override string applied to every run, e.g. "-dedupe_nodes" """

    strict_chains: bool = False
    """Raise on the first chain rule that fails instead of collecting errors"""

    random_seed: int | None = None
    """Seed for dynamic node random selection; unseeded when None"""

    config_path: Path | None = Field(default=None, exclude=True)
    """Where this configuration was loaded from"""

    @field_validator("filter_order", mode="before")
    @classmethod
    def _check_order(cls, value: Any) -> tuple[FilterStage, ...] | None:
        return validate_filter_order(value)

    @classmethod
    def from_yaml(cls, yaml_path: Path, **kwargs: Any) -> NodeflowConfig:
        """Load configuration from a nodeflow.yaml file.

        Args:
            yaml_path: Path to the nodeflow.yaml file
            **kwargs: Settings that win over the file

        Returns:
            NodeflowConfig instance

        Raises:
            RuleConfigError: If the file is not valid YAML or a setting is invalid
        """
        data: dict[str, Any] = {}
        if yaml_path.exists():
            with yaml_path.open() as f:
                try:
                    loaded = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise RuleConfigError(str(yaml_path), f"invalid YAML: {e}") from e
            section = loaded.get("nodeflow", {}) if isinstance(loaded, dict) else {}
            if isinstance(section, dict):
                data.update(section)
            else:
                logger.warning("Invalid nodeflow section in %s: %s", yaml_path, type(section).__name__)

        data.update(kwargs)
        try:
            return cls(config_path=yaml_path, **data)
        except ValueError as e:
            raise RuleConfigError(str(yaml_path), str(e)) from e


# Global configuration instance
_config_instance: NodeflowConfig | None = None
_config_lock = threading.Lock()


def get_config() -> NodeflowConfig:
    """Get the configuration instance."""
    global _config_instance

    if _config_instance is None:
        with _config_lock:
            # Double-check locking pattern
            if _config_instance is None:
                env_config_dir = os.environ.get(CONFIG_DIR_ENV)
                if env_config_dir:
                    config_dir = Path(env_config_dir)
                    logger.info("Using config directory from environment: %s", config_dir)
                else:
                    config_dir = Path.home() / ".nodeflow"

                yaml_path = config_dir / CONFIG_FILENAME
                if yaml_path.exists():
                    logger.info("Loading nodeflow config from: %s", yaml_path)
                    _config_instance = NodeflowConfig.from_yaml(yaml_path)
                else:
                    logger.debug("%s not found, using default config", yaml_path)
                    _config_instance = NodeflowConfig()

    return _config_instance


def set_config_instance(config: NodeflowConfig) -> None:
    """Set the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = config


def clear_config_instance() -> None:
    """Clear the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
