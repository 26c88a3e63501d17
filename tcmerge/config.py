"""tcmerge configuration — yaml file + environment variables, env vars take precedence."""
import os
from pathlib import Path
from typing import Optional

import yaml

from .safe_write import DEFAULT_KEEP

APP_NAME = "tcmerge"


def _xdg(var: str, fallback: str) -> Path:
    value = os.environ.get(var)
    return Path(value) if value else Path.home() / fallback


def default_task_dir() -> Path:
    if os.environ.get("TASKDATA"):
        return Path(os.environ["TASKDATA"])
    return _xdg("XDG_DATA_HOME", ".local/share") / "task"


def default_config_path() -> Path:
    return _xdg("XDG_CONFIG_HOME", ".config") / APP_NAME / "config.yaml"


def _defaults() -> dict:
    return {
        "task_dir": str(default_task_dir()),
        "db_name": "taskchampion.sqlite3",
        "state_dir": str(_xdg("XDG_STATE_HOME", ".local/state") / APP_NAME),
        "keep": DEFAULT_KEEP,
        "log_level": "WARNING",
    }


_ENV_MAP = {
    "TCMERGE_TASK_DIR": "task_dir",
    "TCMERGE_DB_NAME": "db_name",
    "TCMERGE_STATE_DIR": "state_dir",
    "TCMERGE_KEEP": "keep",
    "TCMERGE_LOG_LEVEL": "log_level",
}


class MergeConfig:
    """Loads config from config.yaml (if present) then env vars (override)."""

    def __init__(self, config_path: Optional[str] = None, **overrides):
        self._cfg = _defaults()
        self.config_path = Path(config_path) if config_path else default_config_path()

        # 1. Load yaml if available
        if self.config_path.exists():
            with open(self.config_path, "r", encoding="utf-8") as f:
                try:
                    file_cfg = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ValueError(f"{self.config_path}: {e}") from e
            if not isinstance(file_cfg, dict):
                raise ValueError(f"{self.config_path}: expected a mapping, got {type(file_cfg).__name__}")
            for k, v in file_cfg.items():
                if k in self._cfg and v is not None:
                    self._cfg[k] = v

        # 2. Env vars override
        for env_key, cfg_key in _ENV_MAP.items():
            val = os.environ.get(env_key)
            if val is not None:
                self._cfg[cfg_key] = val

        # 3. Explicit overrides (from constructor kwargs)
        for k, v in overrides.items():
            if v is not None and k in self._cfg:
                self._cfg[k] = v

        self._cfg["keep"] = int(self._cfg["keep"])
        if self._cfg["keep"] < 0:
            raise ValueError(f"keep must be >= 0, got {self._cfg['keep']}")

    @property
    def task_dir(self) -> Path:
        return Path(self._cfg["task_dir"]).expanduser()

    @property
    def db_name(self) -> str:
        return self._cfg["db_name"]

    @property
    def primary_path(self) -> Path:
        return self.task_dir / self.db_name

    @property
    def state_dir(self) -> Path:
        return Path(self._cfg["state_dir"]).expanduser()

    @property
    def keep(self) -> int:
        return self._cfg["keep"]

    @property
    def log_level(self) -> str:
        return str(self._cfg["log_level"]).upper()

    def to_dict(self) -> dict:
        return dict(self._cfg)

    def write_default(self) -> bool:
        """Create the config file if it does not exist yet.

        Paths are left out so they keep following TASKDATA / XDG_* at runtime.
        """
        if self.config_path.exists():
            return False
        defaults = _defaults()
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump({k: defaults[k] for k in ("db_name", "keep", "log_level")}, f,
                           default_flow_style=False, sort_keys=True)
        return True
