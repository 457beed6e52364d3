"""
Local client store.

Each session owns one directory (``db_path`` in the session file) that
holds mautrix's SQLite-backed room state store and, when encryption is
enabled, the Olm crypto store.  The store passphrase from the session file
is the crypto store's pickle key, so the directory is useless without the
session file.

The directory name and passphrase are generated once, at login, and never
derived from user input.
"""

import logging
from pathlib import Path
from typing import Optional

from mautrix.client import Client
from mautrix.client.dispatcher import MembershipEventDispatcher
from mautrix.client.state_store.asyncpg import PgStateStore
from mautrix.types import UserID
from mautrix.util.async_db import Database

logger = logging.getLogger(__name__)

STATE_DB_NAME = "state.db"
CRYPTO_DB_NAME = "crypto.db"


class LocalStore:
    """Owns the databases backing one client.  Call ``close()`` when done."""

    def __init__(self, db_path: Path, passphrase: str) -> None:
        self.db_path = db_path
        self.passphrase = passphrase
        self.state_store: Optional[PgStateStore] = None
        self._state_db: Optional[Database] = None
        self._crypto_db: Optional[Database] = None

    async def open(self) -> PgStateStore:
        self.db_path.mkdir(parents=True, exist_ok=True)
        db = Database.create(
            f"sqlite:///{(self.db_path / STATE_DB_NAME).resolve()}",
            upgrade_table=PgStateStore.upgrade_table,
        )
        await db.start()
        self._state_db = db
        self.state_store = PgStateStore(db)
        return self.state_store

    async def attach_crypto(self, client: Client) -> None:
        """Enable end-to-end encryption on *client* (needs python-olm)."""
        from mautrix.crypto import OlmMachine
        from mautrix.crypto.store import PgCryptoStore

        db = Database.create(
            f"sqlite:///{(self.db_path / CRYPTO_DB_NAME).resolve()}",
            upgrade_table=PgCryptoStore.upgrade_table,
        )
        await db.start()
        self._crypto_db = db

        crypto_store = PgCryptoStore(
            account_id=str(client.mxid),
            pickle_key=self.passphrase,
            db=db,
        )
        olm = OlmMachine(
            client=client,
            crypto_store=crypto_store,
            state_store=client.state_store,
        )
        await olm.load()
        client.crypto = olm

        logger.info("Sharing encryption keys with homeserver")
        await olm.share_keys()
        logger.info("Crypto ready for device_id=%s (store=%s)", client.device_id, self.db_path)

    async def close(self) -> None:
        for db in (self._crypto_db, self._state_db):
            if db is not None:
                await db.stop()
        self._crypto_db = None
        self._state_db = None


async def build_client(
    homeserver: str,
    db_path: Path,
    passphrase: str,
    *,
    user_id: str = "",
    device_id: str = "",
    access_token: str = "",
) -> tuple[Client, LocalStore]:
    """Build a mautrix client backed by the local store at *db_path*."""
    store = LocalStore(db_path, passphrase)
    state_store = await store.open()
    client = Client(
        mxid=UserID(user_id),
        device_id=device_id,
        base_url=homeserver,
        token=access_token,
        state_store=state_store,
    )
    # Translate m.room.member events into InternalEventType.* (INVITE, JOIN, ...)
    client.add_dispatcher(MembershipEventDispatcher)
    return client, store
