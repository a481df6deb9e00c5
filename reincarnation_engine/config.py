import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from croniter import croniter

from .errors import ConfigurationError
from .models import RegexRule

CONFIG_ROOT_KEY = "reincarnation"

# Field names used by the configuration UI, mapped to ours.
GLOBAL_FIELD_ALIASES = {
    "cronTime": "cron_time",
    "activeCron": "active_cron",
    "activeTrigger": "active_trigger",
    "maxDepth": "max_depth",
    "noChange": "no_change",
    "regExprs": "reg_exprs",
}
LOCAL_FIELD_ALIASES = {
    "isLocallyConfigured": "is_locally_configured",
    "isEnabled": "is_enabled",
    "maxDepth": "max_depth",
}


def check_cron_time(cron_time: str) -> Tuple[bool, str]:
    """Validates a cron string for the configuration UI.

    Returns (valid, message). An empty string is accepted: it simply means the
    periodic sweep has nothing to fire on.
    """
    if cron_time is None or not cron_time.strip():
        return True, "No cron time configured."
    if croniter.is_valid(cron_time.strip()):
        return True, "Cron time is valid."
    return False, f"Invalid cron time '{cron_time}'."


def _parse_bool(name: str, value, problems: List[str]) -> bool:
    # The UI posts checkboxes as "true"/"false" strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    problems.append(f"'{name}' must be a boolean. Found: {value!r}")
    return False


def _parse_int(name: str, value, problems: List[str]) -> int:
    if isinstance(value, bool):
        problems.append(f"'{name}' must be an integer. Found: {value!r}")
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        problems.append(f"'{name}' must be an integer. Found: {value!r}")
        return 0


def _normalize_keys(data: dict, aliases: Dict[str, str]) -> dict:
    return {aliases.get(key, key): value for key, value in data.items()}


@dataclass(frozen=True)
class GlobalConfiguration:
    cron_time: str = ""
    active_cron: bool = False
    active_trigger: bool = False
    max_depth: int = 0  # <= 0 means unlimited
    no_change: bool = False
    reg_exprs: Tuple[RegexRule, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "cron_time": self.cron_time,
            "active_cron": self.active_cron,
            "active_trigger": self.active_trigger,
            "max_depth": self.max_depth,
            "no_change": self.no_change,
            "reg_exprs": [rule.pattern for rule in self.reg_exprs],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'GlobalConfiguration':
        """Builds a validated configuration. Raises ConfigurationError listing every bad field."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError(f"Global configuration must be a mapping. Found type: {type(data).__name__}")

        data = _normalize_keys(data, GLOBAL_FIELD_ALIASES)
        problems: List[str] = []

        cron_time = data.get('cron_time') or ""
        if not isinstance(cron_time, str):
            problems.append(f"'cron_time' must be a string. Found: {cron_time!r}")
            cron_time = ""
        else:
            cron_time = cron_time.strip()
            valid, message = check_cron_time(cron_time)
            if not valid:
                problems.append(message)

        active_cron = _parse_bool('active_cron', data.get('active_cron', False), problems)
        active_trigger = _parse_bool('active_trigger', data.get('active_trigger', False), problems)
        no_change = _parse_bool('no_change', data.get('no_change', False), problems)
        max_depth = _parse_int('max_depth', data.get('max_depth', 0), problems)

        raw_rules = data.get('reg_exprs') or []
        if not isinstance(raw_rules, list):
            problems.append(f"'reg_exprs' must be a list of patterns. Found type: {type(raw_rules).__name__}")
            raw_rules = []
        rules = []
        for raw in raw_rules:
            # The UI submits repeated rows as {"value": "..."}
            pattern = raw.get('value', raw.get('pattern')) if isinstance(raw, dict) else raw
            if not isinstance(pattern, str) or not pattern:
                problems.append(f"Regular expression must be a non-empty string. Found: {raw!r}")
                continue
            try:
                re.compile(pattern)
            except re.error as e:
                problems.append(f"Invalid regular expression '{pattern}': {e}")
                continue
            rules.append(RegexRule(pattern))

        if problems:
            raise ConfigurationError(problems)

        return cls(
            cron_time=cron_time,
            active_cron=active_cron,
            active_trigger=active_trigger,
            max_depth=max_depth,
            no_change=no_change,
            reg_exprs=tuple(rules),
        )


@dataclass(frozen=True)
class LocalConfiguration:
    is_locally_configured: bool = False
    is_enabled: bool = False
    max_depth: int = 0

    def to_dict(self) -> dict:
        return {
            "is_locally_configured": self.is_locally_configured,
            "is_enabled": self.is_enabled,
            "max_depth": self.max_depth,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict], job_name: str = "") -> 'LocalConfiguration':
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Local configuration for job '{job_name}' must be a mapping. Found type: {type(data).__name__}"
            )
        data = _normalize_keys(data, LOCAL_FIELD_ALIASES)
        problems: List[str] = []
        config = cls(
            is_locally_configured=_parse_bool('is_locally_configured', data.get('is_locally_configured', False), problems),
            is_enabled=_parse_bool('is_enabled', data.get('is_enabled', False), problems),
            max_depth=_parse_int('max_depth', data.get('max_depth', 0), problems),
        )
        if problems:
            raise ConfigurationError([f"Job '{job_name}': {p}" for p in problems])
        return config


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """Global configuration plus every job's local configuration, as loaded from one file."""
    global_config: GlobalConfiguration
    local_configs: Dict[str, LocalConfiguration] = field(default_factory=dict)

    def to_dict(self) -> dict:
        body = self.global_config.to_dict()
        body["jobs"] = {name: local.to_dict() for name, local in self.local_configs.items()}
        return {CONFIG_ROOT_KEY: body}

    @classmethod
    def from_yaml(cls, file_path: Path, raw_yaml_content: str) -> 'ConfigurationSnapshot':
        try:
            config = yaml.safe_load(raw_yaml_content) or {}
        except yaml.YAMLError as ye:
            raise ConfigurationError(f"YAML syntax error in {file_path.name}: {ye}")
        if not isinstance(config, dict):
            raise ConfigurationError(f"Config {file_path.name} must be a mapping with a '{CONFIG_ROOT_KEY}' key.")

        body = config.get(CONFIG_ROOT_KEY)
        if body is None:
            raise ConfigurationError(f"Config {file_path.name} must contain a '{CONFIG_ROOT_KEY}' key.")
        if not isinstance(body, dict):
            raise ConfigurationError(f"'{CONFIG_ROOT_KEY}' in {file_path.name} must be a mapping.")

        body = dict(body)
        jobs_data = body.pop('jobs', None) or {}
        if not isinstance(jobs_data, dict):
            raise ConfigurationError(f"'jobs' in {file_path.name} must map job names to local configurations.")

        global_config = GlobalConfiguration.from_dict(body)
        local_configs = {
            str(name): LocalConfiguration.from_dict(local_data, job_name=str(name))
            for name, local_data in jobs_data.items()
        }
        return cls(global_config=global_config, local_configs=local_configs)
