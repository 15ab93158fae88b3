"""
Configuration loader for the proof-of-play aggregation pipeline.
Loads config from JSON file and provides validation.
"""
import json
import os
from pathlib import Path
from typing import Any, Dict


class ConfigLoader:
    """Singleton configuration loader with validation."""

    _instance = None
    _config: Dict[str, Any] = {}
    _loaded = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigLoader, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        """Load configuration from JSON file on first instantiation."""
        if not self._loaded:
            config_path = os.getenv("POP_CONFIG", "config.json")
            self._load_config(config_path)
            self._validate()
            self._loaded = True

    def _load_config(self, config_path: str):
        """Load and parse the configuration file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}. "
                "Please create it from config.json or set POP_CONFIG env var."
            )

        with open(config_file, "r") as f:
            self._config = json.load(f)

        # Deployment override for the database file
        db_override = os.getenv("POP_DB_PATH")
        if db_override:
            self._config["database_path"] = db_override

    def _validate(self):
        """Validate required sections and value ranges."""
        required_sections = [
            "database_path",
            "paths",
            "matching",
            "reporting",
            "scheduler",
        ]
        missing = [s for s in required_sections if s not in self._config]
        if missing:
            raise ValueError(f"Missing required config sections: {missing}")

        fallback = self.get("matching.fallback_duration_seconds")
        if not isinstance(fallback, int) or fallback <= 0:
            raise ValueError(
                f"matching.fallback_duration_seconds must be positive integer, got {fallback}"
            )

        tolerance = self.get("matching.tolerance_seconds")
        if not isinstance(tolerance, int) or tolerance < 0:
            raise ValueError(
                f"matching.tolerance_seconds must be non-negative integer, got {tolerance}"
            )

        scale = self.get("reporting.cost_micro_scale", 1_000_000)
        if not isinstance(scale, (int, float)) or scale <= 0:
            raise ValueError(
                f"reporting.cost_micro_scale must be positive number, got {scale}"
            )

        # Lease must outlive a single run but expire before the next hourly trigger
        ttl = self.get("scheduler.lease_ttl_seconds")
        if not isinstance(ttl, int) or not (60 <= ttl <= 3600):
            raise ValueError(
                f"scheduler.lease_ttl_seconds must be between 60 and 3600, got {ttl}"
            )

        attempts = self.get("scheduler.retry_attempts", 3)
        if not isinstance(attempts, int) or attempts < 1:
            raise ValueError(
                f"scheduler.retry_attempts must be at least 1, got {attempts}"
            )

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key_path: Dot-separated path like 'database_path' or 'matching.tolerance_seconds'
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            config.get('database_path')
            config.get('scheduler.retry_attempts', 3)
        """
        keys = key_path.split(".")
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_path(
        self, path_key: str, create: bool = False, base_dir: str = None
    ) -> Path:
        """
        Get a path from config and optionally create the directory.

        Args:
            path_key: Key to path in config (e.g., 'paths.logs_dir')
            create: If True, create the directory
            base_dir: Base directory for relative paths (defaults to current dir)

        Returns:
            Path object (absolute)
        """
        path_str = self.get(path_key)
        if not path_str:
            raise ValueError(f"Path key '{path_key}' not found in config")

        path = Path(path_str)

        if not path.is_absolute():
            if base_dir:
                path = Path(base_dir) / path
            else:
                path = Path.cwd() / path

        if create:
            path.mkdir(parents=True, exist_ok=True)

        return path

    def pipeline_settings(self) -> Dict[str, Any]:
        """Flatten the knobs the stage runner needs into keyword arguments."""
        return {
            "fallback_duration_seconds": self.get("matching.fallback_duration_seconds"),
            "tolerance_seconds": self.get("matching.tolerance_seconds"),
            "cost_micro_scale": self.get("reporting.cost_micro_scale", 1_000_000),
            "running_status": self.get("reporting.running_status", "RUNNING"),
            "lease_ttl_seconds": self.get("scheduler.lease_ttl_seconds"),
            "retry_attempts": self.get("scheduler.retry_attempts", 3),
            "retry_base_delay_seconds": self.get(
                "scheduler.retry_base_delay_seconds", 0.5
            ),
            "initial_hourly_period": self.get("scheduler.initial_hourly_period"),
        }

    def reload(self):
        """Force reload configuration from file (useful for testing)."""
        self._loaded = False
        self.__init__()


# Global singleton instance
_loader = None


def load_config() -> ConfigLoader:
    """Get or create the global configuration loader instance."""
    global _loader
    if _loader is None:
        _loader = ConfigLoader()
    return _loader
