import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional

AFTERBUILD_MARKER = "(Afterbuild restart)"
PERIODIC_MARKER = "(Periodic restart)"
CAUSE_PREFIX = "Reincarnation"


class BuildOutcome(Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    UNSTABLE = "UNSTABLE"
    ABORTED = "ABORTED"
    NOT_BUILT = "NOT_BUILT"


class CauseCategory(Enum):
    REGEX_HIT = "regex-hit"
    UNCHANGED_CONFIG = "unchanged-config"
    LOCALLY_FORCED = "locally-forced"
    PERIODIC_SWEEP = "periodic-sweep"


@dataclass(frozen=True)
class RegexRule:
    pattern: str

    def compile(self) -> "re.Pattern":
        return re.compile(self.pattern)


@dataclass(frozen=True)
class Cause:
    """Marks a build as started by the reincarnation engine."""
    description: str
    category: CauseCategory
    matched_rule: Optional[RegexRule] = None

    @property
    def short_description(self) -> str:
        return f"{CAUSE_PREFIX} - {self.description}"

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "category": self.category.value,
            "matched_rule": self.matched_rule.pattern if self.matched_rule else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Cause':
        if not isinstance(data, dict):
            raise ValueError(f"Cause must be a mapping with 'description' and 'category'. Found: {data!r}")
        rule = data.get('matched_rule')
        return cls(
            description=data['description'],
            category=CauseCategory(data['category']),
            matched_rule=RegexRule(rule) if rule else None,
        )


@dataclass(frozen=True)
class Build:
    """A completed build. Records are never changed once appended to a history."""
    job_name: str
    number: int  # 1-based position in the job's history
    outcome: BuildOutcome
    console_lines: List[str] = field(default_factory=list)
    cause: Optional[Cause] = None
    config_digest: Optional[str] = None  # Digest of the job config the build ran with
    history: Optional["BuildHistory"] = field(default=None, repr=False, compare=False)

    def previous(self) -> Optional["Build"]:
        if self.history is None:
            return None
        return self.history.get(self.number - 1)


class BuildHistory:
    """Append-only build sequence of one job, indexed by build number."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        self._builds: List[Build] = []
        self._lock = threading.Lock()

    def append(self, outcome: BuildOutcome, console_lines: Optional[List[str]] = None,
               cause: Optional[Cause] = None, config_digest: Optional[str] = None) -> Build:
        with self._lock:
            build = Build(
                job_name=self.job_name,
                number=len(self._builds) + 1,
                outcome=outcome,
                console_lines=list(console_lines or []),
                cause=cause,
                config_digest=config_digest,
                history=self,
            )
            self._builds.append(build)
        return build

    def get(self, number: int) -> Optional[Build]:
        if number < 1:
            return None
        builds = self._builds  # point-in-time view, appends never move existing entries
        if number > len(builds):
            return None
        return builds[number - 1]

    def latest(self) -> Optional[Build]:
        builds = self._builds
        return builds[-1] if builds else None

    def __len__(self) -> int:
        return len(self._builds)

    def __iter__(self) -> Iterator[Build]:
        return iter(list(self._builds))


@dataclass
class Job:
    name: str
    local_config: Optional[Any] = None  # LocalConfiguration, see config.py
    history: BuildHistory = None
    # When set, local configuration is looked up on each call (e.g. ConfigManager.get_local)
    local_config_source: Optional[Callable[[str], Any]] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.history is None:
            self.history = BuildHistory(self.name)

    def get_local_configuration(self):
        if self.local_config_source is not None:
            return self.local_config_source(self.name)
        return self.local_config

    def latest_build(self) -> Optional[Build]:
        return self.history.latest()

    def to_dict(self) -> dict:
        latest = self.latest_build()
        local = self.get_local_configuration()
        return {
            "name": self.name,
            "builds": len(self.history),
            "latest_outcome": latest.outcome.value if latest else None,
            "local_config": local.to_dict() if local else None,
        }
