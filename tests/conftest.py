"""Shared test fixtures for the reincarnation engine."""

import pytest

from reincarnation_engine.config import GlobalConfiguration
from reincarnation_engine.host import JobRegistry, QueueingRestartAction
from reincarnation_engine.models import AFTERBUILD_MARKER, PERIODIC_MARKER, Cause, CauseCategory


@pytest.fixture
def restart_action():
    """Restart action that only records requests."""
    return QueueingRestartAction()


@pytest.fixture
def registry(restart_action):
    return JobRegistry(restart_action=restart_action)


@pytest.fixture
def global_config():
    """cron every minute, depth 2, one ERROR rule, unchanged restarts off."""
    return GlobalConfiguration.from_dict({
        "cron_time": "* * * * *",
        "active_cron": True,
        "active_trigger": True,
        "max_depth": 2,
        "reg_exprs": ["ERROR"],
        "no_change": False,
    })


@pytest.fixture
def afterbuild_cause():
    return Cause(f"{AFTERBUILD_MARKER} RegEx hit in console output: ERROR", CauseCategory.REGEX_HIT)


@pytest.fixture
def periodic_cause():
    return Cause(f"{PERIODIC_MARKER} RegEx hit in console output: ERROR", CauseCategory.PERIODIC_SWEEP)
