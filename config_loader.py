"""
Configuration loader for the metrics backfill job.
Loads config from a JSON file and validates warehouse identifiers and window parameters.
"""
import json
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

DEFAULT_RUN_TS_FORMAT = "%Y%m%d_%H%M%S"

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")

WAREHOUSE_IDENTIFIERS = [
    "mds_project_id",
    "mds_dataset",
    "project_id",
    "dataset",
    "insert_table",
]

INTERVAL_PARAMETERS = [
    "interval_max_date",
    "interval_min_date",
    "interval_end_date",
]


def validate_identifier(name: str, value: Any) -> str:
    """Raise ValueError unless value is usable as a quoted warehouse identifier."""
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ValueError(
            f"{name} must match {IDENTIFIER_PATTERN.pattern}, got {value!r}"
        )
    return value


def validate_interval(name: str, value: Any) -> int:
    """Interval parameters are whole day counts. Only the lookback must be non-negative."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer number of days, got {value!r}")
    if name == "interval_end_date" and value < 0:
        raise ValueError(f"interval_end_date must be non-negative, got {value}")
    return value


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
            config_path = os.getenv("METRICS_CONFIG", "config.json")
            self._load_config(config_path)
            self._validate()
            self._loaded = True

    def _load_config(self, config_path: str):
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}. "
                "Please create it from config.json or set METRICS_CONFIG env var."
            )

        with open(config_file, "r") as f:
            self._config = json.load(f)

    def _validate(self):
        """Validate required sections, identifiers and interval parameters."""
        required_sections = ["database_path", "paths", "warehouse", "intervals"]
        missing = [s for s in required_sections if s not in self._config]
        if missing:
            raise ValueError(f"Missing required config sections: {missing}")

        warehouse = self._config.get("warehouse", {})
        for key in WAREHOUSE_IDENTIFIERS:
            validate_identifier(f"warehouse.{key}", warehouse.get(key))

        projects = warehouse.get("projects", {})
        if not isinstance(projects, dict):
            raise ValueError(
                f"warehouse.projects must map project ids to database paths, got {projects!r}"
            )
        for project_id in projects:
            validate_identifier("warehouse.projects key", project_id)

        intervals = self._config.get("intervals", {})
        for key in INTERVAL_PARAMETERS:
            validate_interval(key, intervals.get(key))

        retries = self._config.get("connect", {}).get("retries", 3)
        if isinstance(retries, bool) or not isinstance(retries, int) or retries < 1:
            raise ValueError(f"connect.retries must be a positive integer, got {retries}")

    def get(self, key_path: str, default: Any = None) -> Any:
        """Dot-path lookup, e.g. get('warehouse.insert_table') or get('connect.retries', 3)."""
        value = self._config
        for key in key_path.split("."):
            if not isinstance(value, dict) or key not in value:
                return default
            value = value[key]
        return value

    def run_log_path(self, job_name: str, base_dir: str = None) -> Path:
        """
        Per-run log file under paths.logs_dir, named <job_name>_<run_ts>.log.

        RUN_TS from the environment takes precedence over the current time so a
        scheduler can line the log up with its own run id. Relative logs_dir values
        resolve against base_dir (default: cwd). The directory is created.
        """
        logs_dir = Path(self.get("paths.logs_dir") or "logs")
        if not logs_dir.is_absolute():
            logs_dir = Path(base_dir or Path.cwd()) / logs_dir
        logs_dir.mkdir(parents=True, exist_ok=True)

        run_ts = os.getenv("RUN_TS") or datetime.now().strftime(
            self.get("run_ts_format", DEFAULT_RUN_TS_FORMAT)
        )
        return logs_dir / f"{job_name}_{run_ts}.log"

    def reload(self):
        """Re-read METRICS_CONFIG; a scheduler or test may repoint it between runs."""
        self._loaded = False
        self.__init__()


_loader = None


def load_config() -> ConfigLoader:
    global _loader
    if _loader is None:
        _loader = ConfigLoader()
    return _loader
