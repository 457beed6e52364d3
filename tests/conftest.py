"""Shared fixtures: an in-memory stand-in for the mautrix client."""

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio
from mautrix.errors import MatrixRequestError
from mautrix.types import Membership, MessageType

from headjack.bot import Bot
from headjack.infra.config import BotConfig, Login
from headjack.infra.session_store import SessionStore

BOT_ID = "@bot:example.org"
ALICE = "@alice:example.org"
MALLORY = "@mallory:evil.org"


class FakeStateStore:
    def __init__(self) -> None:
        self.memberships: dict[tuple[str, str], Membership] = {}

    async def get_membership(self, room_id, user_id):
        return self.memberships.get((str(room_id), str(user_id)), Membership.LEAVE)

    async def set_membership(self, room_id, user_id, membership):
        self.memberships[(str(room_id), str(user_id))] = membership


class FakeClient:
    """Implements just the parts of ``mautrix.client.Client`` headjack uses."""

    def __init__(self, user_id: str = "", device_id: str = "", access_token: str = "") -> None:
        self.mxid = user_id
        self.device_id = device_id
        self.access_token = access_token
        self.state_store = FakeStateStore()
        self.api = SimpleNamespace(session=SimpleNamespace(close=self._close_session))
        self.session_closed = False

        self.handlers: dict = {}
        self.dispatched: list[asyncio.Task] = []

        self.join_failures: dict[str, int] = {}
        self.join_attempts: list[str] = []
        self.left: list[str] = []
        self.members: dict[str, list[Membership]] = {}
        self.members_error: Exception | None = None
        self.sent: list[tuple[str, str, str | None]] = []
        self.tags: dict[str, dict[str, dict]] = {}
        self.tag_calls: list[tuple[str, str, str]] = []

        self.sync_responses: list = []
        self.sync_calls: list[dict] = []
        self.handled: list[dict] = []
        self.on_idle = None

        self.reject_login = False
        self.whoami_user: str | None = None

    async def _close_session(self) -> None:
        self.session_closed = True

    # Account ----------------------------------------------------------

    async def login(self, identifier, password, device_name):
        if self.reject_login:
            raise MatrixRequestError("M_FORBIDDEN: Invalid password")
        self.mxid = f"@{identifier}:example.org"
        self.device_id = "DEVICE1"
        self.access_token = "token-1"
        self.device_name = device_name
        return SimpleNamespace(user_id=self.mxid, device_id=self.device_id,
                               access_token=self.access_token)

    async def whoami(self):
        return SimpleNamespace(user_id=self.whoami_user or self.mxid, device_id=self.device_id)

    # Rooms ------------------------------------------------------------

    async def join_room_by_id(self, room_id):
        self.join_attempts.append(str(room_id))
        remaining = self.join_failures.get(str(room_id), 0)
        if remaining:
            self.join_failures[str(room_id)] = remaining - 1
            raise MatrixRequestError("M_FORBIDDEN: not invited yet")
        await self.state_store.set_membership(room_id, self.mxid, Membership.JOIN)
        return room_id

    async def leave_room(self, room_id):
        self.left.append(str(room_id))
        await self.state_store.set_membership(room_id, self.mxid, Membership.LEAVE)

    async def get_members(self, room_id):
        if self.members_error is not None:
            raise self.members_error
        return [
            SimpleNamespace(content=SimpleNamespace(membership=m))
            for m in self.members.get(str(room_id), [])
        ]

    async def send_text(self, room_id, text, html=None):
        self.sent.append((str(room_id), text, html))

    async def get_room_tags(self, room_id):
        return SimpleNamespace(tags=dict(self.tags.get(str(room_id), {})))

    async def set_room_tag(self, room_id, tag):
        self.tag_calls.append(("set", str(room_id), tag))
        self.tags.setdefault(str(room_id), {})[tag] = {}

    async def remove_room_tag(self, room_id, tag):
        self.tag_calls.append(("remove", str(room_id), tag))
        self.tags.get(str(room_id), {}).pop(tag, None)

    # Sync -------------------------------------------------------------

    def add_dispatcher(self, dispatcher) -> None:
        pass

    def add_event_handler(self, event_type, handler) -> None:
        self.handlers.setdefault(event_type, []).append(handler)

    async def sync(self, since=None, timeout=30000, filter_id=None, **_):
        self.sync_calls.append({"since": since, "timeout": timeout, "filter_id": filter_id})
        if not self.sync_responses:
            # Nothing left to serve: let the test stop the bot, answer empty.
            if self.on_idle is not None:
                self.on_idle()
            return {}
        response = self.sync_responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def handle_sync(self, data):
        """Dispatch the ``(event_type, event)`` pairs listed under ``_events``."""
        self.handled.append(data)
        tasks = []
        for event_type, evt in data.get("_events", []):
            for handler in self.handlers.get(event_type, []):
                tasks.append(asyncio.ensure_future(handler(evt)))
        self.dispatched.extend(tasks)
        return tasks

    async def drain(self) -> None:
        """Wait for dispatched handlers and whatever they spawned."""
        while self.dispatched:
            pending, self.dispatched = self.dispatched, []
            await asyncio.gather(*pending)


class FakeLocalStore:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def attach_crypto(self, client) -> None:
        client.crypto = "olm"


class FakeFactory:
    """Stands in for ``build_client``; remembers what it built."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.clients: list[FakeClient] = []
        self.stores: list[FakeLocalStore] = []
        self.error: Exception | None = None
        self.configure = None

    async def __call__(self, homeserver, db_path, passphrase, *,
                       user_id="", device_id="", access_token=""):
        self.calls.append({
            "homeserver": homeserver, "db_path": Path(db_path), "passphrase": passphrase,
            "user_id": user_id, "device_id": device_id, "access_token": access_token,
        })
        if self.error is not None:
            raise self.error
        client = FakeClient(user_id, device_id, access_token)
        if self.configure is not None:
            self.configure(client)
        store = FakeLocalStore()
        self.clients.append(client)
        self.stores.append(store)
        return client, store


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def session_store(tmp_path, factory) -> SessionStore:
    return SessionStore(
        tmp_path / "session",
        client_factory=factory,
        password_prompt=lambda: "prompted",
    )


@pytest.fixture
def config(tmp_path) -> BotConfig:
    return BotConfig(
        login=Login(homeserver_url="https://matrix.example.org", username="bot", password="hunter2"),
        name="bot",
        allow_list=r"@alice:example\.org",
        state_dir=str(tmp_path),
        room_size_limit=2,
    )


@pytest_asyncio.fixture
async def bot(config, session_store):
    bot = Bot(config, session_store=session_store)
    await bot.login()
    yield bot
    await bot.close()


def text_event(room_id: str, sender: str, body: str, msgtype=MessageType.TEXT):
    return SimpleNamespace(
        room_id=room_id,
        sender=sender,
        content=SimpleNamespace(msgtype=msgtype, body=body),
    )


def invite_event(room_id: str, sender: str, state_key: str = BOT_ID):
    return SimpleNamespace(room_id=room_id, sender=sender, state_key=state_key)
