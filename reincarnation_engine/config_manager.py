import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

import yaml

from .config import ConfigurationSnapshot, GlobalConfiguration, LocalConfiguration
from .errors import ConfigurationError
from .logger_setup import logger

CONFIG_FILE_NAME = "reincarnation.yaml"


class ConfigManager:
    """Owns the current configuration snapshot.

    Readers get immutable objects; writers swap the whole snapshot, so a
    decision that took a snapshot keeps seeing it until it finishes. Any
    failed load or update leaves the last valid snapshot in effect.
    """

    def __init__(self, config_path: Optional[Path] = None, load: bool = True):
        if config_path:
            self.config_path = Path(config_path)
        else:
            self.config_path = Path(__file__).resolve().parent.parent / CONFIG_FILE_NAME

        self._lock = threading.Lock()
        self._snapshot = ConfigurationSnapshot(global_config=GlobalConfiguration())
        if load:
            self.load_config()

    @property
    def snapshot(self) -> ConfigurationSnapshot:
        return self._snapshot

    def load_config(self) -> bool:
        logger.info(f"Loading reincarnation config from {self.config_path}...")
        if not self.config_path.exists() or not self.config_path.is_file():
            logger.warning(f"Config file not found: {self.config_path}. Keeping current configuration.")
            return False

        try:
            with open(self.config_path, 'r') as f:
                raw_yaml_content = f.read()
            snapshot = ConfigurationSnapshot.from_yaml(self.config_path, raw_yaml_content)
        except ConfigurationError as ce:
            logger.error(f"Validation error in config {self.config_path.name}: {ce}. Keeping last valid configuration.")
            return False
        except OSError as oe:
            logger.error(f"Could not read config {self.config_path}: {oe}. Keeping last valid configuration.")
            return False

        with self._lock:
            self._snapshot = snapshot
        logger.info(f"Loaded config: {len(snapshot.global_config.reg_exprs)} regular expressions, "
                    f"{len(snapshot.local_configs)} locally configured jobs.")
        return True

    def reload_config(self) -> bool:
        """Explicitly reloads the configuration file."""
        logger.info("Reloading reincarnation configuration...")
        return self.load_config()

    def get_global(self) -> Optional[GlobalConfiguration]:
        return self._snapshot.global_config

    def get_local(self, job_name: str) -> Optional[LocalConfiguration]:
        return self._snapshot.local_configs.get(job_name)

    def update_global(self, data: dict) -> GlobalConfiguration:
        """Validates and installs a new global configuration. Raises ConfigurationError."""
        new_global = GlobalConfiguration.from_dict(data)
        with self._lock:
            self._snapshot = replace(self._snapshot, global_config=new_global)
        logger.info(f"Global configuration updated: {new_global.to_dict()}")
        return new_global

    def update_local(self, job_name: str, data: Optional[dict]) -> Optional[LocalConfiguration]:
        """Installs (or with data=None removes) a job's local configuration."""
        new_local = LocalConfiguration.from_dict(data, job_name=job_name) if data is not None else None
        with self._lock:
            local_configs = dict(self._snapshot.local_configs)
            if new_local is None:
                local_configs.pop(job_name, None)
            else:
                local_configs[job_name] = new_local
            self._snapshot = replace(self._snapshot, local_configs=local_configs)
        logger.info(f"Local configuration for job '{job_name}' updated: {new_local.to_dict() if new_local else None}")
        return new_local

    def save(self) -> None:
        snapshot = self._snapshot
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            yaml.safe_dump(snapshot.to_dict(), f, sort_keys=False)
        logger.debug(f"Saved reincarnation config to {self.config_path}")
