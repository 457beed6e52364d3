"""
Bot configuration.

``BotConfig`` is usually built from a YAML file::

    login:
      homeserver_url: https://matrix.example.org
      username: mybot
      password: hunter2        # optional, prompted for when absent
    name: mybot                # optional, defaults to login.username
    allow_list: "@alice:example\\.org|@bob:example\\.org"
    state_dir: ~/bots/mybot    # optional
    command_prefix: "!mybot"   # optional
    room_size_limit: 50        # optional
    encryption: false
    logging:
      level: INFO

Validation happens once, at load time: a missing key, a wrong type or an
allow-list that is not a valid regular expression raises ``ConfigError``.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from headjack.core.allow_list import compile_allow_list
from headjack.errors import ConfigError

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class Login:
    homeserver_url: str
    username: str
    # Asked for on the command line when not set.
    password: Optional[str] = None


@dataclass
class BotConfig:
    login: Login
    name: Optional[str] = None
    # Regex over sender user IDs; None rejects every external sender.
    allow_list: Optional[str] = None
    state_dir: Optional[str] = None
    command_prefix: Optional[str] = None
    # Refuse to stay in rooms with more active members than this.
    room_size_limit: Optional[int] = None
    encryption: bool = False
    log_level: str = "INFO"
    extra: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "BotConfig":
        if not self.login.homeserver_url:
            raise ConfigError("login.homeserver_url is required")
        if not self.login.username:
            raise ConfigError("login.username is required")
        if self.allow_list is not None:
            compile_allow_list(self.allow_list)
        if self.room_size_limit is not None:
            if isinstance(self.room_size_limit, bool) or not isinstance(self.room_size_limit, int):
                raise ConfigError(f"room_size_limit must be an integer, got {self.room_size_limit!r}")
            if self.room_size_limit < 0:
                raise ConfigError("room_size_limit must not be negative")
        if self.command_prefix is not None and not self.command_prefix:
            raise ConfigError("command_prefix must not be empty")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigError(f"Unknown logging level {self.log_level!r}")
        return self


def _optional_str(raw: dict, key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int, float)):
        raise ConfigError(f"{key} must be a string")
    return str(value)


def config_from_dict(raw: Any) -> BotConfig:
    """Build and validate a ``BotConfig`` from a parsed YAML document."""
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping")
    login_raw = raw.get("login")
    if not isinstance(login_raw, dict):
        raise ConfigError("'login' section missing or not a mapping")

    login = Login(
        homeserver_url=_optional_str(login_raw, "homeserver_url") or "",
        username=_optional_str(login_raw, "username") or "",
        password=_optional_str(login_raw, "password"),
    )
    logging_raw = raw.get("logging") or {}
    known = {"login", "name", "allow_list", "state_dir", "command_prefix",
             "room_size_limit", "encryption", "logging"}
    cfg = BotConfig(
        login=login,
        name=_optional_str(raw, "name"),
        allow_list=_optional_str(raw, "allow_list"),
        state_dir=_optional_str(raw, "state_dir"),
        command_prefix=_optional_str(raw, "command_prefix"),
        room_size_limit=raw.get("room_size_limit"),
        encryption=bool(raw.get("encryption", False)),
        log_level=str(logging_raw.get("level", "INFO")).upper(),
        extra={k: v for k, v in raw.items() if k not in known},
    )
    return cfg.validate()


def load_config(path: Path) -> BotConfig:
    if not path.exists():
        raise ConfigError(f"{path} not found. Copy config.yaml.example and fill in your settings.")
    try:
        with path.open(encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc
    logger.debug("Loaded configuration from %s", path)
    return config_from_dict(raw)
