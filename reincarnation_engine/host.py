import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import yaml

from .errors import RestartActionError
from .logger_setup import logger
from .models import Build, BuildOutcome, Cause, CauseCategory, Job, RegexRule


@dataclass(frozen=True)
class RestartRequest:
    job_name: str
    cause: Cause

    def to_dict(self) -> dict:
        return {"job_name": self.job_name, "triggered_by": self.cause.short_description, "cause": self.cause.to_dict()}


class RestartAction(ABC):
    """Re-queues a job on the host and returns the Cause the new build will carry."""

    def restart(self, job: Job, reason_text: str, matched_rule: Optional[RegexRule],
                category: CauseCategory) -> Cause:
        cause = Cause(description=reason_text, category=category, matched_rule=matched_rule)
        logger.info(f"Restarting job '{job.name}': {cause.short_description}")
        self._queue(job, cause)
        return cause

    @abstractmethod
    def _queue(self, job: Job, cause: Cause) -> None:
        ...


class QueueingRestartAction(RestartAction):
    """Keeps restart requests in process. The host polls them with GET /api/restarts when no host URL is configured."""

    def __init__(self):
        self._lock = threading.Lock()
        self.requests: List[RestartRequest] = []

    def _queue(self, job: Job, cause: Cause) -> None:
        with self._lock:
            self.requests.append(RestartRequest(job_name=job.name, cause=cause))

    def drain(self) -> List[RestartRequest]:
        with self._lock:
            requests, self.requests = self.requests, []
        return requests


class HttpRestartAction(RestartAction):
    """Asks a CI server to trigger a build, e.g. POST /api/job/<name>/build."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip('/')
        self._client = client or httpx.Client(base_url=self.base_url, timeout=httpx.Timeout(timeout))

    def _queue(self, job: Job, cause: Cause) -> None:
        payload = {"triggered_by": cause.short_description, "cause": cause.to_dict()}
        try:
            response = self._client.post(f"/api/job/{job.name}/build", json=payload)
        except httpx.TimeoutException:
            raise RestartActionError(job.name, f"timed out contacting {self.base_url}")
        except httpx.RequestError as e:
            raise RestartActionError(job.name, f"could not reach {self.base_url}: {e}")
        if response.status_code >= 300:
            raise RestartActionError(job.name, f"host answered HTTP {response.status_code}: {response.text[:200]}")
        logger.debug(f"Host accepted restart of '{job.name}' (HTTP {response.status_code})")

    def close(self) -> None:
        self._client.close()


def builds_unchanged(job: Job) -> bool:
    """Latest build failed right after a successful build that ran the same configuration."""
    latest = job.latest_build()
    if latest is None or latest.outcome == BuildOutcome.SUCCESS:
        return False
    previous = latest.previous()
    if previous is None or previous.outcome != BuildOutcome.SUCCESS:
        return False
    if latest.config_digest is None or previous.config_digest is None:
        return False
    return latest.config_digest == previous.config_digest


class Host(ABC):
    """What the engine needs from the orchestration system."""

    @abstractmethod
    def list_jobs(self) -> List[Job]:
        ...

    @abstractmethod
    def get_job(self, name: str) -> Optional[Job]:
        ...

    @abstractmethod
    def qualifies_for_unchanged_restart(self, job: Job) -> bool:
        ...

    @property
    @abstractmethod
    def restart_action(self) -> RestartAction:
        ...


class JobRegistry(Host):
    """Mirror of the host's jobs and build histories, fed by build notifications."""

    def __init__(self, restart_action: Optional[RestartAction] = None,
                 local_config_source: Optional[Callable[[str], object]] = None,
                 unchanged_predicate: Callable[[Job], bool] = builds_unchanged):
        self._restart_action = restart_action or QueueingRestartAction()
        self._local_config_source = local_config_source
        self._unchanged_predicate = unchanged_predicate
        self._lock = threading.Lock()
        self.jobs: Dict[str, Job] = {}

    @property
    def restart_action(self) -> RestartAction:
        return self._restart_action

    def ensure_job(self, name: str) -> Job:
        with self._lock:
            job = self.jobs.get(name)
            if job is None:
                job = Job(name=name, local_config_source=self._local_config_source)
                self.jobs[name] = job
                logger.debug(f"Registered job: {name}")
            return job

    def get_job(self, name: str) -> Optional[Job]:
        return self.jobs.get(name)

    def list_jobs(self) -> List[Job]:
        return list(self.jobs.values())

    def qualifies_for_unchanged_restart(self, job: Job) -> bool:
        return self._unchanged_predicate(job)

    def drain_restarts(self) -> List[RestartRequest]:
        """Hands out restart requests queued in process. Requests sent straight to a host never show up here."""
        if not isinstance(self._restart_action, QueueingRestartAction):
            return []
        requests = self._restart_action.drain()
        if requests:
            logger.info(f"Handing out {len(requests)} queued restart request(s).")
        return requests

    def record_build(self, job_name: str, outcome: BuildOutcome, console_lines: Optional[List[str]] = None,
                     cause: Optional[Cause] = None, config_digest: Optional[str] = None) -> Build:
        """Appends a completed build to the job's history. Mirror build numbers start at 1."""
        job = self.ensure_job(job_name)
        build = job.history.append(outcome, console_lines=console_lines, cause=cause, config_digest=config_digest)
        logger.debug(f"Recorded build #{build.number} of '{job_name}' with outcome {outcome.value}")
        return build

    @classmethod
    def from_yaml(cls, file_path: Path, raw_yaml_content: str, **kwargs) -> 'JobRegistry':
        """Builds a registry from a build history file (``jobs: {name: {builds: [...]}}``, oldest build first)."""
        data = yaml.safe_load(raw_yaml_content) or {}
        jobs_data = data.get('jobs') if isinstance(data, dict) else None
        if not isinstance(jobs_data, dict):
            raise ValueError(f"History file {file_path.name} must contain a 'jobs' mapping.")

        registry = cls(**kwargs)
        for job_name, job_data in jobs_data.items():
            registry.ensure_job(str(job_name))
            job_data = job_data or {}
            builds_data = job_data.get('builds') if isinstance(job_data, dict) else None
            if not isinstance(job_data, dict) or not isinstance(builds_data, (list, type(None))):
                raise ValueError(f"Job '{job_name}' in {file_path.name} must be a mapping with a 'builds' list.")
            for b_data in builds_data or []:
                if not isinstance(b_data, dict):
                    raise ValueError(f"Build of job '{job_name}' in {file_path.name} must be a mapping. Found: {b_data!r}")
                try:
                    outcome = BuildOutcome(str(b_data['outcome']).upper())
                except (KeyError, ValueError):
                    raise ValueError(
                        f"Build of job '{job_name}' in {file_path.name} needs an 'outcome' out of "
                        f"{[o.value for o in BuildOutcome]}. Found: {b_data.get('outcome')!r}"
                    )
                cause_data = b_data.get('cause')
                registry.record_build(
                    str(job_name),
                    outcome,
                    console_lines=b_data.get('console_lines', []),
                    cause=Cause.from_dict(cause_data) if cause_data else None,
                    config_digest=b_data.get('config_digest'),
                )
        return registry
