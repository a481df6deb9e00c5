import re
from typing import Iterable, Optional, Sequence

from .logger_setup import logger
from .models import RegexRule


def find_match(console_lines: Optional[Iterable[str]], rules: Optional[Sequence[RegexRule]]) -> Optional[RegexRule]:
    """Returns the first rule, in configured order, that matches anywhere in the console output.

    Matching is case-sensitive ``re.search`` per line. Absent output or an
    empty rule list yields None.
    """
    if not rules or console_lines is None:
        return None
    lines = list(console_lines)
    if not lines:
        return None

    for rule in rules:
        try:
            compiled = rule.compile()
        except re.error as e:
            logger.error(f"Skipping invalid regular expression '{rule.pattern}': {e}")
            continue
        for line in lines:
            if line is not None and compiled.search(line):
                logger.debug(f"Regular expression '{rule.pattern}' matched console line: {line.rstrip()}")
                return rule
    return None
