"""Tests for reincarnation_engine/periodic.py"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from reincarnation_engine.errors import RestartActionError
from reincarnation_engine.host import JobRegistry, QueueingRestartAction
from reincarnation_engine.models import AFTERBUILD_MARKER, PERIODIC_MARKER, BuildOutcome, Cause, CauseCategory, RegexRule
from reincarnation_engine.periodic import DEFAULT_RECURRENCE_PERIOD, PeriodicSweep, cron_due_since, cron_matches

NOW = datetime(2026, 10, 17, 12, 30, 15)


def _sweep(registry, config):
    return PeriodicSweep(registry, config_provider=lambda: config)


class TestCronMatches:
    def test_every_minute(self):
        assert cron_matches("* * * * *", NOW) is True

    def test_specific_minute(self):
        assert cron_matches("30 12 * * *", NOW) is True
        assert cron_matches("31 12 * * *", NOW) is False

    def test_invalid_expression(self):
        with pytest.raises(ValueError):
            cron_matches("not a cron", NOW)


class TestCronDueSince:
    def test_without_previous_tick_checks_current_minute(self):
        assert cron_due_since("30 12 * * *", None, NOW) is True
        assert cron_due_since("29 12 * * *", None, NOW) is False

    def test_minute_skipped_between_ticks_is_due(self):
        last = datetime(2026, 10, 17, 12, 28, 59)
        assert cron_due_since("29 12 * * *", last, NOW) is True

    def test_minute_already_handled_is_not_due_again(self):
        assert cron_due_since("30 12 * * *", NOW, NOW + timedelta(seconds=30)) is False

    def test_clock_going_backwards_checks_current_minute(self):
        assert cron_due_since("30 12 * * *", NOW + timedelta(hours=1), NOW) is True

    def test_invalid_expression(self):
        with pytest.raises(ValueError):
            cron_due_since("not a cron", NOW - timedelta(minutes=5), NOW)


class TestOnTick:
    def test_disabled_cron_evaluates_nothing(self, restart_action, global_config):
        registry = JobRegistry(restart_action=restart_action,
                               unchanged_predicate=lambda job: pytest.fail("job evaluated"))
        registry.record_build("job", BuildOutcome.FAILURE, console_lines=["ERROR"])

        report = _sweep(registry, replace(global_config, active_cron=False)).on_tick(now=NOW)

        assert report.evaluated == 0
        assert report.restarts == 0
        assert report.skipped_reason == "cron trigger disabled"
        assert restart_action.requests == []

    def test_missing_configuration(self, registry):
        assert _sweep(registry, None).on_tick(now=NOW).evaluated == 0

    def test_cron_not_due(self, registry, restart_action, global_config):
        registry.record_build("job", BuildOutcome.FAILURE, console_lines=["ERROR"])
        report = _sweep(registry, replace(global_config, cron_time="0 3 * * *")).on_tick(now=NOW)
        assert report.skipped_reason == "cron time not due"
        assert restart_action.requests == []

    def test_empty_cron_time(self, registry, global_config):
        report = _sweep(registry, replace(global_config, cron_time="")).on_tick(now=NOW)
        assert report.skipped_reason == "no cron time configured"

    def test_invalid_stored_cron_skips_tick(self, registry, global_config):
        report = _sweep(registry, replace(global_config, cron_time="bogus")).on_tick(now=NOW)
        assert report.evaluated == 0
        assert "bogus" in report.skipped_reason

    def test_restarts_failed_jobs_with_regex_hit(self, registry, restart_action, global_config):
        registry.record_build("broken", BuildOutcome.FAILURE, console_lines=["ERROR: disk full"])
        registry.record_build("healthy", BuildOutcome.SUCCESS, console_lines=["ERROR count: 0"])
        registry.record_build("other", BuildOutcome.FAILURE, console_lines=["assertion failed"])

        report = _sweep(registry, global_config).on_tick(now=NOW)

        assert report.evaluated == 3
        assert [d.job_name for d in report.decisions] == ["broken"]
        [request] = restart_action.requests
        assert request.cause.category == CauseCategory.PERIODIC_SWEEP
        assert request.cause.matched_rule == RegexRule("ERROR")
        assert request.cause.description.startswith(PERIODIC_MARKER)

    def test_unchanged_restart(self, registry, restart_action, global_config):
        registry.record_build("job", BuildOutcome.SUCCESS, config_digest="x")
        registry.record_build("job", BuildOutcome.FAILURE, console_lines=["flaky"], config_digest="x")

        report = _sweep(registry, replace(global_config, no_change=True)).on_tick(now=NOW)

        assert report.restarts == 1
        assert restart_action.requests[0].cause.matched_rule is None
        assert "No difference" in restart_action.requests[0].cause.description

    def test_at_most_one_restart_per_job(self, registry, restart_action, global_config):
        registry.record_build("job", BuildOutcome.SUCCESS, config_digest="x")
        registry.record_build("job", BuildOutcome.FAILURE, console_lines=["ERROR"], config_digest="x")

        _sweep(registry, replace(global_config, no_change=True)).on_tick(now=NOW)

        assert len(restart_action.requests) == 1
        assert restart_action.requests[0].cause.matched_rule == RegexRule("ERROR")

    def test_job_without_builds_is_skipped(self, registry, restart_action, global_config):
        registry.ensure_job("empty")
        report = _sweep(registry, global_config).on_tick(now=NOW)
        assert report.evaluated == 1
        assert restart_action.requests == []

    def test_depth_tracked_separately_from_afterbuild(self, registry, restart_action, global_config):
        afterbuild = Cause(f"{AFTERBUILD_MARKER} RegEx hit in console output: ERROR", CauseCategory.REGEX_HIT)
        periodic = Cause(f"{PERIODIC_MARKER} RegEx hit in console output: ERROR", CauseCategory.PERIODIC_SWEEP)
        registry.record_build("a", BuildOutcome.FAILURE, cause=afterbuild)
        registry.record_build("a", BuildOutcome.FAILURE, console_lines=["ERROR"], cause=afterbuild)
        registry.record_build("p", BuildOutcome.FAILURE, cause=periodic)
        registry.record_build("p", BuildOutcome.FAILURE, console_lines=["ERROR"], cause=periodic)

        report = _sweep(registry, global_config).on_tick(now=NOW)

        assert [d.job_name for d in report.decisions] == ["a"]

    def test_failure_on_one_job_does_not_stop_sweep(self, global_config):
        class FlakyAction(QueueingRestartAction):
            def _queue(self, job, cause):
                if job.name == "first":
                    raise RestartActionError(job.name, "host down")
                super()._queue(job, cause)

        action = FlakyAction()
        registry = JobRegistry(restart_action=action)
        registry.record_build("first", BuildOutcome.FAILURE, console_lines=["ERROR"])
        registry.record_build("second", BuildOutcome.FAILURE, console_lines=["ERROR"])

        report = _sweep(registry, global_config).on_tick(now=NOW)

        assert report.failed_jobs == ["first"]
        assert [r.job_name for r in action.requests] == ["second"]


class TestScheduler:
    def test_default_recurrence_period(self, registry, global_config):
        assert _sweep(registry, global_config).recurrence_period == DEFAULT_RECURRENCE_PERIOD == 60

    def test_thread_stops_on_event(self, registry, global_config):
        stop_event = threading.Event()
        thread = _sweep(registry, global_config).start(stop_event)
        assert thread.daemon
        stop_event.set()
        thread.join(timeout=5)
        assert not thread.is_alive()

    def test_scheduled_tick_swallows_errors(self, registry):
        def broken_provider():
            raise RuntimeError("config store unavailable")

        PeriodicSweep(registry, config_provider=broken_provider)._scheduled_tick()


class TestDriftingTicks:
    """Ticks that arrive a little later every minute, as with slow sweeps under ``every(60).seconds``."""

    START = datetime(2026, 10, 17, 12, 0, 0)

    def _run(self, registry, config, ticks=300, step_ms=60_300):
        sweep = _sweep(registry, config)
        return [sweep.on_tick(now=self.START + timedelta(milliseconds=step_ms * k)) for k in range(ticks)]

    def test_daily_minute_between_ticks_still_sweeps_once(self, registry, restart_action, global_config):
        # Tick 199 lands on 15:19:59.7 and tick 200 on 15:21:00, so no tick falls inside 15:20.
        registry.record_build("job", BuildOutcome.FAILURE, console_lines=["ERROR"])

        reports = self._run(registry, replace(global_config, cron_time="20 15 * * *"))

        swept = [k for k, report in enumerate(reports) if report.skipped_reason is None]
        assert swept == [200]
        assert len(restart_action.requests) == 1

    def test_every_minute_sweeps_on_every_tick(self, registry, global_config):
        reports = self._run(registry, global_config)
        assert all(report.skipped_reason is None for report in reports)

    def test_repeated_tick_in_same_minute_sweeps_once(self, registry, global_config):
        sweep = _sweep(registry, global_config)
        assert sweep.on_tick(now=NOW).skipped_reason is None
        assert sweep.on_tick(now=NOW + timedelta(seconds=20)).skipped_reason == "cron time not due"

    def test_disabling_cron_forgets_missed_minutes(self, registry, global_config):
        enabled = {"value": True}
        sweep = PeriodicSweep(registry, config_provider=lambda: replace(
            global_config, cron_time="31 12 * * *", active_cron=enabled["value"]))

        assert sweep.on_tick(now=NOW).skipped_reason == "cron time not due"
        enabled["value"] = False
        sweep.on_tick(now=NOW + timedelta(minutes=1))
        enabled["value"] = True

        assert sweep.on_tick(now=NOW + timedelta(minutes=2)).skipped_reason == "cron time not due"
