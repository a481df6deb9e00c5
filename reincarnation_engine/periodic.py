import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

import schedule
from croniter import croniter

from .config import GlobalConfiguration
from .decision import RestartDecision
from .errors import ReincarnationError
from .history import within_depth
from .host import Host
from .logger_setup import logger
from .models import PERIODIC_MARKER, BuildOutcome, CauseCategory, Job
from .pattern_matcher import find_match

DEFAULT_RECURRENCE_PERIOD = 60  # seconds; one tick per cron minute

REGEX_RESTART_REASON = f"{PERIODIC_MARKER} RegEx hit in console output: "
UNCHANGED_RESTART_REASON = f"{PERIODIC_MARKER} No difference between last two builds"


@dataclass
class SweepReport:
    evaluated: int = 0
    decisions: List[RestartDecision] = field(default_factory=list)
    failed_jobs: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def restarts(self) -> int:
        return len(self.decisions)


def _minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


def cron_matches(cron_time: str, now: datetime) -> bool:
    """True if ``now`` falls on a minute selected by ``cron_time``. Raises ValueError for bad expressions."""
    if not croniter.is_valid(cron_time):
        raise ValueError(f"Invalid cron time '{cron_time}'")
    return bool(croniter.match(cron_time, _minute(now)))


def cron_due_since(cron_time: str, last_tick: Optional[datetime], now: datetime) -> bool:
    """True if a minute selected by ``cron_time`` lies after ``last_tick`` and no later than ``now``.

    Without a previous tick (or when the clock went backwards) only the current minute is checked.
    """
    if last_tick is None or now < last_tick:
        return cron_matches(cron_time, now)
    if not croniter.is_valid(cron_time):
        raise ValueError(f"Invalid cron time '{cron_time}'")
    return croniter(cron_time, _minute(last_tick)).get_next(datetime) <= now


class PeriodicSweep:
    def __init__(self, host: Host, config_provider: Callable[[], Optional[GlobalConfiguration]],
                 recurrence_period: int = DEFAULT_RECURRENCE_PERIOD):
        self.host = host
        self.config_provider = config_provider
        self.recurrence_period = recurrence_period
        self._last_tick: Optional[datetime] = None  # cron minutes up to here have been handled

    def on_tick(self, now: Optional[datetime] = None) -> SweepReport:
        """Runs one sweep if the cron trigger is active and a cron minute fell due since the previous tick.

        A due minute that no tick landed on (slow sweeps, scheduler drift) is caught up by the next tick.
        Several missed minutes still produce a single sweep.
        """
        report = SweepReport()
        global_config = self.config_provider()
        if global_config is None:
            report.skipped_reason = "no global configuration"
            self._last_tick = None
            return report
        if not global_config.active_cron:
            report.skipped_reason = "cron trigger disabled"
            self._last_tick = None
            logger.debug("Periodic reincarnation disabled; skipping tick.")
            return report
        if not global_config.cron_time:
            report.skipped_reason = "no cron time configured"
            self._last_tick = None
            return report

        now = now or datetime.now()
        try:
            due = cron_due_since(global_config.cron_time, self._last_tick, now)
        except ValueError as e:
            report.skipped_reason = str(e)
            self._last_tick = None
            logger.error(f"Skipping periodic reincarnation: {e}")
            return report
        if not due:
            self._last_tick = max(now, self._last_tick or now)
            report.skipped_reason = "cron time not due"
            return report

        self._last_tick = now
        logger.info("Running periodic reincarnation sweep...")
        for job in self.host.list_jobs():
            report.evaluated += 1
            try:
                decision = self.evaluate_job(job, global_config)
            except ReincarnationError as e:
                logger.error(f"Periodic restart of job '{job.name}' failed: {e}")
                report.failed_jobs.append(job.name)
                continue
            except Exception as e:
                logger.error(f"Error during periodic reincarnation of job '{job.name}': {e}", exc_info=True)
                report.failed_jobs.append(job.name)
                continue
            if decision is not None:
                report.decisions.append(decision)
        logger.info(f"Periodic sweep finished: {report.evaluated} jobs evaluated, {report.restarts} restarted.")
        return report

    def evaluate_job(self, job: Job, global_config: GlobalConfiguration) -> Optional[RestartDecision]:
        """At most one restart per job and tick: regex hit first, otherwise unchanged configuration."""
        build = job.latest_build()
        if build is None or build.outcome == BuildOutcome.SUCCESS:
            return None
        if not within_depth(build, global_config.max_depth, PERIODIC_MARKER):
            return None

        rule = find_match(build.console_lines, global_config.reg_exprs)
        if rule is not None:
            reason = REGEX_RESTART_REASON + rule.pattern
        elif global_config.no_change and self.host.qualifies_for_unchanged_restart(job):
            reason = UNCHANGED_RESTART_REASON
        else:
            return None

        cause = self.host.restart_action.restart(job, reason, rule, CauseCategory.PERIODIC_SWEEP)
        return RestartDecision(job_name=job.name, build_number=build.number, category=CauseCategory.PERIODIC_SWEEP,
                               reason=reason, matched_rule=rule, cause=cause)

    def _scheduled_tick(self):
        # schedule re-raises job exceptions out of run_pending().
        try:
            self.on_tick()
        except Exception as e:
            logger.error(f"Periodic reincarnation tick failed: {e}", exc_info=True)

    def run_scheduler(self, stop_event: Optional[threading.Event] = None, poll_interval: float = 1.0):
        logger.info(f"Starting periodic reincarnation scheduler (every {self.recurrence_period}s).")
        scheduler = schedule.Scheduler()
        scheduler.every(self.recurrence_period).seconds.do(self._scheduled_tick)
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            scheduler.run_pending()
            time.sleep(poll_interval)
        scheduler.clear()
        logger.info("Periodic reincarnation scheduler stopped.")

    def start(self, stop_event: Optional[threading.Event] = None) -> threading.Thread:
        thread = threading.Thread(target=self.run_scheduler, args=(stop_event,), daemon=True,
                                  name="periodic-reincarnation")
        thread.start()
        return thread
