"""
Matrix Bot

Composes the session store, allow-list filter, command registry and
retry-join policy into the lifecycle an embedding application drives::

    bot = Bot(config)
    await bot.login()            # restore the session or log in fresh
    await bot.sync()             # catch up from the stored cursor
    bot.join_rooms()             # autojoin rooms allowed users invite us to
    bot.register_text_command("ping", None, "Reply with pong", ping)
    await bot.run()              # sync forever

Only one ``m.room.message`` listener is installed per bot.  It applies the
joined-room / text-message / allow-list filters and then walks the command
table once.  Invites are handled on the sync task's behalf by spawning one
``RetryJoin`` task per room, so a slow join never holds up syncing.

The sync cursor is persisted to the session file after every successful
sync, so a restart resumes exactly where the previous run stopped.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import aiohttp
from mautrix.client import Client, InternalEventType
from mautrix.errors import MatrixError, MUnknownToken
from mautrix.types import EventType, FilterID, Membership, MessageType, RoomID, UserID

from headjack.core.allow_list import is_allowed
from headjack.core.commands import CommandRegistry, Handler, command_prefix
from headjack.core.retry_join import JoinCallback, RetryJoin
from headjack.errors import SyncError, TransportInitFailed
from headjack.infra.config import BotConfig
from headjack.infra.paths import SESSION_FILE_NAME, resolve_state_dir
from headjack.infra.session_store import SessionStore
from headjack.interfaces.room import Room

logger = logging.getLogger(__name__)

# Lazy-load room members; speeds up the initial sync a lot for accounts in
# many rooms.  Passed inline instead of uploading a filter first.
LAZY_LOADING_FILTER = FilterID('{"room":{"state":{"lazy_load_members":true}}}')

SYNC_TIMEOUT_MS = 30_000
SYNC_RETRY_DELAY = 1.0

_SECTION_MEMBERSHIP = {
    "join": Membership.JOIN,
    "invite": Membership.INVITE,
    "leave": Membership.LEAVE,
}


class Bot:
    """A Matrix bot.  See the module docstring for the lifecycle."""

    def __init__(self, config: BotConfig, session_store: Optional[SessionStore] = None) -> None:
        self._cfg = config.validate()
        self._session_store = session_store or SessionStore(
            self.session_file, encryption=config.encryption,
        )
        self._client: Optional[Client] = None
        self._sync_token: Optional[str] = None
        self._commands = CommandRegistry()
        self._help_registered = False
        self._running = False
        self._dispatch_messages = False
        self._background_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> BotConfig:
        return self._cfg

    @property
    def name(self) -> str:
        """The configured bot name, defaulting to the login username."""
        return self._cfg.name or self._cfg.login.username

    @property
    def client(self) -> Client:
        if self._client is None:
            raise RuntimeError("client not initialized, call login() first")
        return self._client

    @property
    def full_name(self) -> str:
        """The bot's own Matrix user ID."""
        return str(self.client.mxid)

    @property
    def state_dir(self) -> Path:
        return resolve_state_dir(self.name, self._cfg.state_dir)

    @property
    def session_file(self) -> Path:
        return self.state_dir / SESSION_FILE_NAME

    @property
    def command_prefix(self) -> str:
        return command_prefix(self.name, self._cfg.command_prefix)

    @property
    def sync_token(self) -> Optional[str]:
        return self._sync_token

    @property
    def commands(self) -> CommandRegistry:
        return self._commands

    def room(self, room_id: str) -> Room:
        return Room(self.client, room_id)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def login(self) -> None:
        """Restore the previous session, or log in with a new device."""
        if self._session_store.exists():
            client, sync_token = await self._session_store.restore()
        else:
            login = self._cfg.login
            client = await self._session_store.create(
                login.homeserver_url, login.username, login.password,
            )
            sync_token = None
        self._sync_token = sync_token
        self._attach(client)

    def _attach(self, client: Client) -> None:
        self._client = client
        client.add_event_handler(EventType.ROOM_MESSAGE, self._on_message)

    async def sync(self) -> None:
        """Sync once to the current state of the homeserver.

        Retries until the server answers.  When resuming from a stored
        cursor, messages received while the bot was offline are handed to
        the handlers registered so far.  After a fresh login there is no
        cursor and the response is history: room state and invites are
        processed but messages are not dispatched.
        """
        if self._sync_token is not None:
            self._dispatch_messages = True
        data = await self._sync_once(timeout=0)
        await self._handle_sync(data)

    async def run(self) -> None:
        """Sync forever, persisting the cursor after every response."""
        self._register_help_command()
        self._running = True
        self._dispatch_messages = True
        logger.info("Bot %s running as %s", self.name, self.full_name)
        try:
            while self._running:
                data = await self._sync_once(timeout=SYNC_TIMEOUT_MS)
                await self._handle_sync(data)
        finally:
            self._running = False

    def stop(self) -> None:
        """Stop the run loop after the sync in flight completes."""
        self._running = False

    async def close(self) -> None:
        self.stop()
        if self._client is not None:
            try:
                await self._client.api.session.close()
            except Exception:  # noqa: BLE001
                logger.debug("Closing HTTP session failed", exc_info=True)
        # Pending autojoins would otherwise wake up against a closed store.
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._session_store.close()

    async def _sync_once(self, timeout: int) -> dict[str, Any]:
        while True:
            try:
                return await self._raw_sync(timeout)
            except SyncError as exc:
                logger.error("An error occurred during sync: %s", exc)
                logger.error("Trying again…")
                await asyncio.sleep(SYNC_RETRY_DELAY)

    async def _raw_sync(self, timeout: int) -> dict[str, Any]:
        try:
            return await self.client.sync(
                since=self._sync_token,
                timeout=timeout,
                filter_id=LAZY_LOADING_FILTER,
            )
        except MUnknownToken as exc:
            raise TransportInitFailed(f"Access token rejected during sync: {exc}") from exc
        except (MatrixError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SyncError(str(exc) or type(exc).__name__) from exc

    async def _handle_sync(self, data: dict[str, Any]) -> None:
        await self._record_memberships(data)
        self.client.handle_sync(data)
        next_batch = data.get("next_batch")
        if next_batch:
            self._sync_token = next_batch
            # We persist the token each time to be able to restore our session
            await self._session_store.persist_cursor(next_batch)

    async def _record_memberships(self, data: dict[str, Any]) -> None:
        """Note our own membership for every room section in a sync response."""
        rooms = data.get("rooms") or {}
        own = UserID(self.full_name)
        for section, membership in _SECTION_MEMBERSHIP.items():
            for room_id in rooms.get(section) or {}:
                await self.client.state_store.set_membership(RoomID(room_id), own, membership)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_text_command(
        self,
        command: str,
        args: Optional[str],
        short_help: Optional[str],
        handler: Handler,
    ) -> None:
        """Call *handler* whenever an allowed user sends ``<prefix><command>``."""
        self._commands.register(command, args, short_help, handler)

    def register_text_handler(self, handler: Handler) -> None:
        """Call *handler* for every allowed message that is not a command."""
        self._commands.register_catch_all(handler)

    def _register_help_command(self) -> None:
        if self._help_registered:
            return
        self._help_registered = True

        async def _help(_sender: str, _body: str, room: Room) -> None:
            await room.send_markdown(self._commands.help_text(self.command_prefix))

        self.register_text_command("help", None, "Show this message", _help)

    def join_rooms(self, callback: Optional[JoinCallback] = None) -> None:
        """Autojoin rooms that allowed users invite the bot to.

        *callback* is awaited with the ``Room`` each time a join completes
        and the room passes the size check.
        """
        async def _on_invite(evt) -> None:
            await self._on_invite(evt, callback)

        self.client.add_event_handler(InternalEventType.INVITE, _on_invite)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_message(self, evt) -> None:
        if not self._dispatch_messages:
            return
        room = self.room(evt.room_id)
        # Ignore messages from rooms we're not in
        if not await room.is_joined():
            return
        if getattr(evt.content, "msgtype", None) != MessageType.TEXT:
            return
        sender = str(evt.sender)
        if not is_allowed(self._cfg.allow_list, sender, self.full_name):
            return
        body = (evt.content.body or "").lstrip()
        await self._commands.dispatch(self.command_prefix, sender, body, room)

    async def _on_invite(self, evt, callback: Optional[JoinCallback] = None) -> Optional[asyncio.Task]:
        if str(evt.state_key) != self.full_name:
            # the invite we've seen isn't for us, but for someone else
            return None
        if not is_allowed(self._cfg.allow_list, str(evt.sender), self.full_name):
            logger.debug("Ignoring invite to %s from %s", evt.room_id, evt.sender)
            return None
        logger.info("Received invite to %s from %s", evt.room_id, evt.sender)

        # Joining waits for the next sync to return the new room state, so
        # it must not run on the task that drives the sync loop.
        join = RetryJoin(self.room(evt.room_id), self._cfg.room_size_limit, callback)
        task = asyncio.create_task(join.run(), name=f"autojoin-{evt.room_id}")
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
