from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .config import GlobalConfiguration, LocalConfiguration
from .errors import ReincarnationError
from .history import within_depth
from .host import Host
from .logger_setup import logger
from .models import AFTERBUILD_MARKER, Build, BuildOutcome, Cause, CauseCategory, Job, RegexRule
from .pattern_matcher import find_match

LOCAL_RESTART_REASON = f"{AFTERBUILD_MARKER} Locally configured project."
REGEX_RESTART_REASON = f"{AFTERBUILD_MARKER} RegEx hit in console output: "
UNCHANGED_RESTART_REASON = f"{AFTERBUILD_MARKER} No difference between last two builds"


class EffectiveMode(Enum):
    LOCAL_FORCED = "local-forced"
    GLOBAL = "global"


@dataclass(frozen=True)
class EffectiveConfiguration:
    enabled: bool
    max_depth: int
    mode: EffectiveMode

    @property
    def locally_forced(self) -> bool:
        return self.mode == EffectiveMode.LOCAL_FORCED


def resolve_effective(local: Optional[LocalConfiguration], global_config: GlobalConfiguration) -> EffectiveConfiguration:
    """A flagged local configuration fully overrides the global after-build settings."""
    if local is not None and local.is_locally_configured:
        return EffectiveConfiguration(enabled=local.is_enabled, max_depth=local.max_depth,
                                      mode=EffectiveMode.LOCAL_FORCED)
    return EffectiveConfiguration(enabled=global_config.active_trigger, max_depth=global_config.max_depth,
                                  mode=EffectiveMode.GLOBAL)


@dataclass(frozen=True)
class RestartDecision:
    job_name: str
    build_number: int
    category: CauseCategory
    reason: str
    matched_rule: Optional[RegexRule] = None
    cause: Optional[Cause] = None

    def to_dict(self) -> dict:
        return {
            "job_name": self.job_name,
            "build_number": self.build_number,
            "category": self.category.value,
            "reason": self.reason,
            "matched_rule": self.matched_rule.pattern if self.matched_rule else None,
        }


class DecisionEngine:
    """After-build restart decisions.

    ``config_provider`` is called once per evaluation and must return the
    current GlobalConfiguration snapshot (or None when none is available).
    """

    def __init__(self, host: Host, config_provider: Callable[[], Optional[GlobalConfiguration]]):
        self.host = host
        self.config_provider = config_provider

    def on_build_completed(self, build: Optional[Build]) -> List[RestartDecision]:
        """Entry point for the host's build-completion notification. Never raises."""
        try:
            return self.evaluate(build)
        except ReincarnationError as e:
            logger.error(f"After-build restart failed: {e}")
        except Exception as e:
            job_name = build.job_name if build is not None else "?"
            logger.error(f"Unexpected error evaluating build of job '{job_name}': {e}", exc_info=True)
        return []

    def evaluate(self, build: Optional[Build]) -> List[RestartDecision]:
        """Decides and requests restarts for one completed build. Restart action errors propagate."""
        if build is None:
            return []
        job = self.host.get_job(build.job_name)
        if job is None:
            logger.debug(f"No job '{build.job_name}' known for completed build #{build.number}.")
            return []
        if build.outcome == BuildOutcome.SUCCESS:
            return []

        global_config = self.config_provider()
        if global_config is None:
            logger.debug("No global configuration available; skipping after-build restart.")
            return []

        effective = resolve_effective(job.get_local_configuration(), global_config)
        if not effective.enabled:
            logger.debug(f"After-build restart disabled for job '{job.name}' ({effective.mode.value}).")
            return []

        if effective.locally_forced:
            return self._local_restart(job, build, effective)

        decisions = []
        decisions.extend(self._regex_restart(job, build, effective, global_config))
        decisions.extend(self._unchanged_restart(job, build, effective, global_config))
        if not decisions:
            logger.debug(f"Build #{build.number} of '{job.name}' does not qualify for a restart.")
        return decisions

    def _local_restart(self, job: Job, build: Build, effective: EffectiveConfiguration) -> List[RestartDecision]:
        if not within_depth(build, effective.max_depth, AFTERBUILD_MARKER):
            return []
        return [self._request(job, build, CauseCategory.LOCALLY_FORCED, LOCAL_RESTART_REASON, None)]

    def _regex_restart(self, job: Job, build: Build, effective: EffectiveConfiguration,
                       global_config: GlobalConfiguration) -> List[RestartDecision]:
        rule = find_match(build.console_lines, global_config.reg_exprs)
        if rule is None or not within_depth(build, effective.max_depth, AFTERBUILD_MARKER):
            return []
        return [self._request(job, build, CauseCategory.REGEX_HIT, REGEX_RESTART_REASON + rule.pattern, rule)]

    def _unchanged_restart(self, job: Job, build: Build, effective: EffectiveConfiguration,
                           global_config: GlobalConfiguration) -> List[RestartDecision]:
        if not global_config.no_change:
            return []
        if not self.host.qualifies_for_unchanged_restart(job):
            return []
        if not within_depth(build, effective.max_depth, AFTERBUILD_MARKER):
            return []
        return [self._request(job, build, CauseCategory.UNCHANGED_CONFIG, UNCHANGED_RESTART_REASON, None)]

    def _request(self, job: Job, build: Build, category: CauseCategory, reason: str,
                 rule: Optional[RegexRule]) -> RestartDecision:
        cause = self.host.restart_action.restart(job, reason, rule, category)
        return RestartDecision(job_name=job.name, build_number=build.number, category=category,
                               reason=reason, matched_rule=rule, cause=cause)
