"""Sender allow-list filter."""

import functools
import re
from typing import Optional

from headjack.errors import ConfigError


@functools.lru_cache(maxsize=32)
def compile_allow_list(pattern: str) -> re.Pattern:
    """Compile *pattern*, turning a bad regex into a ``ConfigError``."""
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"Invalid allow_list regular expression {pattern!r}: {exc}") from exc


def is_allowed(pattern: Optional[str], sender: str, self_identity: str) -> bool:
    """Decide whether an event from *sender* should be processed.

    Events authored by the bot itself are never processed.  Without a
    pattern every external sender is rejected; otherwise the sender must
    match the whole pattern.
    """
    if sender == self_identity:
        return False
    if pattern is None:
        return False
    return compile_allow_list(pattern).fullmatch(sender) is not None
