"""
Room handle

A thin wrapper binding a mautrix ``Client`` to one room.  It is what
handlers, the retry-join task and the tag store receive, so none of them
need to know about the client directly.
"""

import html
import logging
import re

from mautrix.client import Client
from mautrix.types import Membership, RoomID

from headjack.errors import JoinFailed

logger = logging.getLogger(__name__)

_ACTIVE_MEMBERSHIPS = (Membership.JOIN, Membership.INVITE)


def markdown_to_html(text: str) -> str:
    """Very small Markdown subset: bold, italic, code blocks, inline code."""
    text = html.escape(text, quote=False)
    # Code blocks
    text = re.sub(r"```(\w*)\n(.*?)```", r"<pre><code>\2</code></pre>", text, flags=re.DOTALL)
    # Inline code
    text = re.sub(r"`([^`]+)`", r"<code>\1</code>", text)
    # Bold
    text = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", text)
    # Italic
    text = re.sub(r"\*(.+?)\*", r"<em>\1</em>", text)
    # Newlines
    text = text.replace("\n", "<br>")
    return text


class Room:
    def __init__(self, client: Client, room_id: str) -> None:
        self.client = client
        self.room_id = RoomID(room_id)

    def __repr__(self) -> str:
        return f"Room({self.room_id!s})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Room) and other.room_id == self.room_id

    def __hash__(self) -> int:
        return hash(self.room_id)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def membership(self) -> Membership:
        return await self.client.state_store.get_membership(self.room_id, self.client.mxid)

    async def is_joined(self) -> bool:
        return await self.membership() == Membership.JOIN

    async def join(self) -> None:
        try:
            await self.client.join_room_by_id(self.room_id)
        except Exception as exc:  # noqa: BLE001
            raise JoinFailed(str(self.room_id), exc) from exc

    async def leave(self) -> None:
        logger.debug("Leaving %s", self.room_id)
        await self.client.leave_room(self.room_id)

    async def active_member_count(self) -> int:
        """Number of joined or invited members."""
        members = await self.client.get_members(self.room_id)
        return sum(1 for evt in members if evt.content.membership in _ACTIVE_MEMBERSHIPS)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_text(self, text: str) -> None:
        await self.client.send_text(self.room_id, text)

    async def send_markdown(self, text: str) -> None:
        await self.client.send_text(self.room_id, text, html=markdown_to_html(text))

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def tag_names(self) -> list[str]:
        content = await self.client.get_room_tags(self.room_id)
        tags = getattr(content, "tags", None) or {}
        return [str(tag) for tag in tags]

    async def set_tag(self, tag: str) -> None:
        await self.client.set_room_tag(self.room_id, tag)

    async def remove_tag(self, tag: str) -> None:
        await self.client.remove_room_tag(self.room_id, tag)
