class ReincarnationError(Exception):
    """Base class for errors raised by the reincarnation engine."""


class ConfigurationError(ReincarnationError):
    """Raised when a global or local configuration fails validation.

    ``problems`` holds one human readable message per offending field so the
    configuration UI can show all of them at once.
    """

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class RestartActionError(ReincarnationError):
    """Raised when the host could not re-queue a build."""

    def __init__(self, job_name: str, message: str):
        self.job_name = job_name
        super().__init__(f"Restart of job '{job_name}' failed: {message}")
