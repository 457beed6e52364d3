"""
Error taxonomy.

Startup problems (``ConfigError``) and login/restore problems (the
``SessionError`` family) are fatal and surface to the caller of
``Bot.login()``.  ``JoinFailed``, ``HandlerError`` and ``SyncError`` are
raised close to the transport or the embedder's code and are consumed by
the retry-join task, the dispatcher and the sync driver respectively.
"""


class HeadjackError(Exception):
    """Base class for every error raised by headjack itself."""


class ConfigError(HeadjackError):
    """Invalid configuration: bad allow-list regex, missing keys, no state dir."""


class SessionError(HeadjackError):
    """The persisted session could not be used to establish a transport."""


class SessionCorrupt(SessionError):
    """The session file is missing, unreadable or does not hold a full record."""


class TransportInitFailed(SessionError):
    """The transport client could not be rebuilt from stored credentials."""


class AuthFailed(SessionError):
    """The homeserver rejected the username/password exchange."""


class JoinFailed(HeadjackError):
    """A single attempt to join a room failed."""

    def __init__(self, room_id: str, cause: BaseException | None = None) -> None:
        super().__init__(f"failed to join {room_id}: {cause}")
        self.room_id = room_id
        self.cause = cause


class HandlerError(HeadjackError):
    """Raised by (or on behalf of) a command or text handler.

    Handlers may raise it deliberately to report an expected failure; the
    dispatcher logs it without a traceback.
    """


class SyncError(HeadjackError):
    """A sync request to the homeserver failed."""
