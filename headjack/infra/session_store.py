"""
Session Store

Persists everything needed to re-establish a Matrix session across
restarts as a single JSON document (``<state_dir>/session``)::

    {
      "client_session": {"homeserver": ..., "db_path": ..., "passphrase": ...},
      "user_session":   {"user_id": ..., "device_id": ..., "access_token": ...},
      "sync_token":     "s123_456"          # absent until the first sync
    }

``client_session`` is what is needed to rebuild the client and its local
store; ``user_session`` is the opaque credential blob returned by login.
Keeping the two apart lets either evolve without touching the other.

Writes go to a temporary file in the same directory and are moved into
place with ``os.replace()``, so a crash leaves either the old or the new
record on disk, never a truncated one.
"""

from __future__ import annotations

import asyncio
import getpass
import json
import logging
import os
import secrets
import string
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from mautrix.client import Client
from mautrix.errors import MatrixError, MatrixRequestError

from headjack.errors import AuthFailed, SessionCorrupt, TransportInitFailed
from headjack.infra.local_store import LocalStore, build_client

logger = logging.getLogger(__name__)

DEVICE_DISPLAY_NAME = "headjack client"

_ALPHANUMERIC = string.ascii_letters + string.digits
_DB_SUBFOLDER_LENGTH = 7
_PASSPHRASE_LENGTH = 32

ClientFactory = Callable[..., Awaitable[tuple[Client, LocalStore]]]
PasswordPrompt = Callable[[], str]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class ClientSession:
    """The data needed to rebuild a client."""
    homeserver: str
    db_path: str
    passphrase: str


@dataclass
class UserSession:
    """Credentials returned by the homeserver at login."""
    user_id: str
    device_id: str
    access_token: str


@dataclass
class FullSession:
    client_session: ClientSession
    user_session: UserSession
    sync_token: Optional[str] = None

    def to_json(self) -> str:
        data: dict[str, Any] = {
            "client_session": asdict(self.client_session),
            "user_session": asdict(self.user_session),
        }
        if self.sync_token is not None:
            data["sync_token"] = self.sync_token
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "FullSession":
        try:
            data = json.loads(raw)
            return cls(
                client_session=ClientSession(**data["client_session"]),
                user_session=UserSession(**data["user_session"]),
                sync_token=data.get("sync_token"),
            )
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise SessionCorrupt(f"Malformed session record: {exc}") from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def random_alphanumeric(length: int) -> str:
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def prompt_password() -> str:
    return getpass.getpass("Password: ").strip()


def _atomic_write(path: Path, text: str) -> None:
    """Write *text* to *path* via a temp file + ``os.replace()``."""
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".session_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = -1  # fdopen took ownership of the descriptor
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        try:
            os.chmod(tmp_path, 0o600)
        except OSError:
            pass
        os.replace(tmp_path, str(path))
    except BaseException:
        if fd >= 0:
            os.close(fd)
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SessionStore:
    """Reads and writes the session file at *path*.

    The local store of whichever client was last created or restored is
    kept so that ``close()`` can release it.
    """

    def __init__(
        self,
        path: Path,
        *,
        client_factory: ClientFactory = build_client,
        password_prompt: PasswordPrompt = prompt_password,
        encryption: bool = False,
    ) -> None:
        self.path = path
        self._client_factory = client_factory
        self._password_prompt = password_prompt
        self._encryption = encryption
        self._local_store: Optional[LocalStore] = None
        self._lock = asyncio.Lock()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> FullSession:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise SessionCorrupt(f"No session record at {self.path}") from exc
        except OSError as exc:
            raise SessionCorrupt(f"Cannot read {self.path}: {exc}") from exc
        return FullSession.from_json(raw)

    def save(self, session: FullSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.path, session.to_json())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def restore(self) -> tuple[Client, Optional[str]]:
        """Rebuild the client from the session file.

        Returns the client and the stored sync token (``None`` if the bot
        never completed a sync).
        """
        logger.info("Previous session found in '%s'", self.path)
        session = self.load()
        cs, us = session.client_session, session.user_session

        try:
            client, store = await self._client_factory(
                cs.homeserver,
                Path(cs.db_path),
                cs.passphrase,
                user_id=us.user_id,
                device_id=us.device_id,
                access_token=us.access_token,
            )
        except Exception as exc:  # noqa: BLE001
            raise TransportInitFailed(f"Could not build client for {cs.homeserver}: {exc}") from exc
        self._local_store = store

        logger.info("Restoring session for %s…", us.user_id)
        try:
            whoami = await client.whoami()
        except MatrixError as exc:
            await self.close()
            raise TransportInitFailed(f"Stored credentials for {us.user_id} were rejected: {exc}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            await self.close()
            raise TransportInitFailed(f"Could not reach {cs.homeserver}: {exc}") from exc
        if str(whoami.user_id) != us.user_id:
            await self.close()
            raise TransportInitFailed(
                f"Stored credentials belong to {whoami.user_id}, expected {us.user_id}"
            )

        if self._encryption:
            await self._attach_crypto(client)
        logger.info("Done!")
        return client, session.sync_token

    async def create(
        self,
        homeserver: str,
        username: str,
        password: Optional[str] = None,
    ) -> Client:
        """Log in with a new device and persist the resulting session."""
        logger.info("No previous session found, logging in…")

        state_dir = self.path.parent
        state_dir.mkdir(parents=True, exist_ok=True)
        # Subfolder per login, in case several clients share the state dir.
        db_path = state_dir / random_alphanumeric(_DB_SUBFOLDER_LENGTH)
        passphrase = random_alphanumeric(_PASSPHRASE_LENGTH)

        try:
            client, store = await self._client_factory(homeserver, db_path, passphrase)
        except Exception as exc:  # noqa: BLE001
            raise TransportInitFailed(f"Could not build client for {homeserver}: {exc}") from exc
        self._local_store = store

        if password is None:
            password = self._password_prompt()

        try:
            resp = await client.login(
                identifier=username,
                password=password,
                device_name=DEVICE_DISPLAY_NAME,
            )
        except MatrixRequestError as exc:
            logger.error("Error logging in: %s", exc)
            await self.close()
            raise AuthFailed(f"Login as {username} rejected: {exc}") from exc
        except Exception as exc:  # noqa: BLE001
            logger.error("Error logging in: %s", exc)
            await self.close()
            raise TransportInitFailed(f"Could not log in at {homeserver}: {exc}") from exc
        logger.info("Logged in as %s", username)

        session = FullSession(
            client_session=ClientSession(
                homeserver=homeserver,
                db_path=str(db_path),
                passphrase=passphrase,
            ),
            user_session=UserSession(
                user_id=str(resp.user_id),
                device_id=str(resp.device_id),
                access_token=resp.access_token,
            ),
            sync_token=None,
        )
        self.save(session)
        logger.info("Session persisted in %s", self.path)

        if self._encryption:
            await self._attach_crypto(client)
        return client

    async def persist_cursor(self, sync_token: str) -> None:
        """Replace only the sync token of the existing record."""
        async with self._lock:
            session = self.load()
            session.sync_token = sync_token
            self.save(session)

    async def close(self) -> None:
        if self._local_store is not None:
            await self._local_store.close()
            self._local_store = None

    async def _attach_crypto(self, client: Client) -> None:
        try:
            await self._local_store.attach_crypto(client)
        except Exception as exc:  # noqa: BLE001
            await self.close()
            raise TransportInitFailed(f"Could not set up encryption: {exc}") from exc
