"""Filesystem locations used by a bot."""

import os
from pathlib import Path

SESSION_FILE_NAME = "session"
LOG_DIR_NAME = "logs"


def expand_tilde(path: str) -> str:
    """Expand a leading ``~/`` to the home directory; leave anything else alone."""
    if path.startswith("~/"):
        home = Path.home()
        return str(home) + path[1:]
    return path


def default_state_root() -> Path:
    """``$XDG_STATE_HOME``, falling back to ``~/.local/state``."""
    xdg = os.environ.get("XDG_STATE_HOME")
    if xdg:
        return Path(xdg)
    return Path.home() / ".local" / "state"


def resolve_state_dir(name: str, override: str | None = None) -> Path:
    if override:
        return Path(expand_tilde(override))
    return default_state_root() / name
