"""
Centralized configuration management for Concord
Handles environment-specific configs, environment overrides and validation
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .config_schema import ConcordConfig, validate_config_dict
from .utils.thread_safety import ThreadSafeConfigManager

logger = logging.getLogger("concord.config")

ENV_PATH = os.path.expanduser(os.getenv("CONCORD_ENV_FILE", "~/.concord/.env"))

# 🌍 Load environment variables before overrides are read
if os.path.exists(ENV_PATH):
    load_dotenv(dotenv_path=ENV_PATH)
# Also allow project-root .env to supply overrides (common in dev setups)
load_dotenv()

# Environment variable -> (dotted config path, type)
ENV_OVERRIDES = {
    "CONCORD_LOG_LEVEL": ("log_level", str),
    "CONCORD_PORT": ("port", int),
    "CONCORD_TICK_SECONDS": ("scheduler.tick_seconds", float),
    "CONCORD_ACTUATION_TIMEOUT": ("scheduler.actuation_timeout", float),
    "CONCORD_SCHEDULER_AUTOSTART": ("scheduler.autostart", lambda v: v.lower() in ("1", "true", "yes", "on")),
    "CONCORD_PRESENCE_URL": ("presence.url", str),
    "CONCORD_ACTUATOR_URL": ("actuator.url", str),
    "CONCORD_ACTUATOR_TOKEN": ("actuator.token", str),
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base`` (lists are replaced)."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _set_path(config: Dict[str, Any], dotted: str, value: Any) -> None:
    node = config
    parts = dotted.split(".")
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


class ConfigManager:
    """Manages configuration loading and validation"""

    def __init__(self, base_path: Optional[str] = None, environment: Optional[str] = None):
        self.base_path = Path(base_path) if base_path else Path(__file__).resolve().parent.parent
        self.config_dir = self.base_path / "config"
        self.environment = environment or os.getenv("CONCORD_ENV", "development")

    def _read_json(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load %s: %s", path.name, e)
            return {}

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        for env_name, (dotted, cast) in ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue
            try:
                _set_path(config, dotted, cast(raw))
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", env_name, raw)
        return config

    def load_config(self, config_name: Optional[str] = None) -> Dict[str, Any]:
        """Load ``default_config.json`` merged with ``<environment>.json`` and env overrides."""
        config_name = config_name or self.environment
        config = deep_merge(
            self._read_json(self.config_dir / "default_config.json"),
            self._read_json(self.config_dir / f"{config_name}.json"),
        )
        config["environment"] = self.environment
        config = self._apply_env_overrides(config)
        return self.validate_config(config)

    def load_model(self, config_name: Optional[str] = None) -> ConcordConfig:
        return ConcordConfig(**self.load_config(config_name))

    def validate_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate against the pydantic schema; invalid configs fail loudly."""
        validated = validate_config_dict(config)
        logger.debug("✅ Configuration validated against schema")
        return validated.to_dict()

    def save_config(self, config: Dict[str, Any], config_name: Optional[str] = None) -> bool:
        config_name = config_name or self.environment
        config_file = self.config_dir / f"{config_name}.json"
        try:
            save_data = validate_config_dict(config).to_dict()
            config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(config_file, "w", encoding="utf-8") as f:
                json.dump(save_data, f, indent=2)
            return True
        except ValueError as e:
            logger.error("❌ Refusing to save invalid config: %s", e)
            return False
        except OSError as e:
            logger.error("❌ Could not write %s: %s", config_file, e)
            return False

    def get_environment(self) -> str:
        return self.environment

    def list_available_configs(self) -> list[str]:
        if not self.config_dir.exists():
            return []
        return sorted(p.stem for p in self.config_dir.glob("*.json"))


_config_manager: Optional[ThreadSafeConfigManager] = None


def get_config_manager() -> ThreadSafeConfigManager:
    """Process-wide thread-safe config manager."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ThreadSafeConfigManager(ConfigManager())
    return _config_manager


def load_config() -> Dict[str, Any]:
    """Load current environment configuration (thread-safe)"""
    return get_config_manager().load_config()


def save_config(config: Dict[str, Any]) -> bool:
    """Save configuration (thread-safe)"""
    return get_config_manager().save_config(config)
