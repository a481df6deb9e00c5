from typing import Optional

from .logger_setup import logger
from .models import Build


def count_restarts(build: Optional[Build], marker: str, limit: int = 0) -> int:
    """Counts builds in the chain ending at ``build`` whose cause carries ``marker``.

    The walk includes ``build`` itself and stops early once ``limit`` (if > 0)
    is reached.
    """
    count = 0
    while build is not None:
        if build.cause is not None and marker in build.cause.description:
            count += 1
            if 0 < limit <= count:
                break
        build = build.previous()
    return count


def within_depth(build: Optional[Build], max_depth: int, marker: str) -> bool:
    """True if another restart of ``marker``'s trigger family is allowed for this build."""
    if max_depth <= 0:
        return True
    count = count_restarts(build, marker, limit=max_depth)
    if count >= max_depth:
        job_name = build.job_name if build is not None else "?"
        logger.info(f"Restart depth {max_depth} reached for job '{job_name}' ({marker}). Not restarting.")
        return False
    return True
