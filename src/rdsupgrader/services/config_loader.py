"""YAML defaults for the rdsupgrader commands."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from rdsupgrader.errors import UpgraderError

_TEXT = (str,)
_NUMBER = (int, float)
_FLAG = (bool,)


class ConfigLoader:
    """Loads and type-checks a YAML configuration file."""

    SUPPORTED_KEYS = {
        "region": _TEXT,
        "profile": _TEXT,
        "logs_dir": _TEXT,
        "log_bucket": _TEXT,
        "notification_topic_arn": _TEXT,
        "secret_tag_key": _TEXT,
        "log_file": _TEXT,
        "snapshot_enabled": _FLAG,
        "parameter_tuning_enabled": _FLAG,
        "auto_drop_replication_slots": _FLAG,
        "verbose": _FLAG,
        "initial_delay_seconds": _NUMBER,
        "poll_interval_seconds": _NUMBER,
        "wait_timeout_minutes": _NUMBER,
        "max_wait_attempts": (int,),
        "connect_timeout": (int,),
    }

    # Keys whose absence has a meaning of its own ("no bucket", "wait forever").
    NULLABLE_KEYS = {
        "region",
        "profile",
        "log_bucket",
        "notification_topic_arn",
        "log_file",
        "max_wait_attempts",
        "wait_timeout_minutes",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.is_file():
            raise UpgraderError(f"Config file not found: {config_path}")

        try:
            with path.open(encoding="utf-8") as file_obj:
                parsed = yaml.safe_load(file_obj)
        except (yaml.YAMLError, OSError) as exc:
            raise UpgraderError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise UpgraderError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(str(key) for key in parsed if key not in self.SUPPORTED_KEYS)
        if unknown:
            raise UpgraderError(f"Unknown configuration keys: {', '.join(unknown)}")

        for key, value in parsed.items():
            self._check_type(key, value)
        return parsed

    def _check_type(self, key: str, value: Any):
        if value is None and key in self.NULLABLE_KEYS:
            return

        expected = self.SUPPORTED_KEYS[key]
        # YAML booleans are ints to isinstance, but never a valid number here.
        if isinstance(value, bool) and bool not in expected:
            valid = False
        else:
            valid = isinstance(value, expected)

        if not valid:
            names = " or ".join(kind.__name__ for kind in expected)
            raise UpgraderError(
                f"Configuration key '{key}' must be of type {names}, got {type(value).__name__}."
            )
