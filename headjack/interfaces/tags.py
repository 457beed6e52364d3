"""
Room Tag Store

Room tags are per-user account data on a room.  Applications namespace
their tags in the form ``tld.domain.tag``; this module reads and writes
only the tags under one namespace and exposes them with the namespace
stripped.

``Tags`` is an opinionated in-memory view supporting plain tags and
key/value tags (stored as ``key=value``).  Mutations are local until
``sync()`` (or ``close()``, or leaving an ``async with`` block) pushes the
difference to the server::

    async with await Tags.load(room, "org.example.mybot") as tags:
        tags.replace_kv("mode", "quiet")

Reconciliation adds what is new, removes what is gone and leaves the rest
alone.  The two phases are not atomic: a failure part-way through leaves
the room with a partially updated tag set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from headjack.interfaces.room import Room

logger = logging.getLogger(__name__)


def _full_name(namespace: str, tag: str) -> str:
    return f"{namespace}.{tag}" if namespace else tag


async def get_tags(room: Room, namespace: str) -> list[str]:
    """All tags in the room under *namespace*, with the namespace stripped."""
    names = await room.tag_names()
    if not namespace:
        return names
    prefix = f"{namespace}."
    return [name[len(prefix):] for name in names if name.startswith(prefix)]


async def add_tag(room: Room, namespace: str, tag: str) -> None:
    await room.set_tag(_full_name(namespace, tag))


async def remove_tag(room: Room, namespace: str, tag: str) -> None:
    await room.remove_tag(_full_name(namespace, tag))


@dataclass
class TagSyncResult:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


async def replace_tags(room: Room, namespace: str, tags: Iterable[str]) -> TagSyncResult:
    """Make the room's tags under *namespace* equal to *tags*."""
    wanted = list(dict.fromkeys(tags))
    existing = await get_tags(room, namespace)
    result = TagSyncResult(
        added=[t for t in wanted if t not in existing],
        removed=[t for t in existing if t not in wanted],
    )
    for tag in result.added:
        await add_tag(room, namespace, tag)
    for tag in result.removed:
        await remove_tag(room, namespace, tag)
    if result.changed:
        logger.debug(
            "Tags in %s under %r: +%s -%s",
            room.room_id, namespace, result.added, result.removed,
        )
    return result


class Tags:
    """The namespaced tags of one room.

    Build it with ``await Tags.load(room, namespace)``.  Nothing is sent
    to the server until ``sync()``/``close()`` is awaited.
    """

    def __init__(self, room: Room, namespace: str, tags: Iterable[str] = ()) -> None:
        self.room = room
        self._namespace = namespace
        self._tags: list[str] = list(dict.fromkeys(tags))
        self._dirty = False

    @classmethod
    async def load(cls, room: Room, namespace: str) -> "Tags":
        return cls(room, namespace, await get_tags(room, namespace))

    async def __aenter__(self) -> "Tags":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def tags(self) -> list[str]:
        return list(self._tags)

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def get_value(self, key: str) -> Optional[str]:
        prefix = f"{key}="
        for tag in self._tags:
            if tag.startswith(prefix):
                return tag[len(prefix):]
        return None

    def get_kvs(self) -> dict[str, str]:
        kvs = {}
        for tag in self._tags:
            key, sep, value = tag.partition("=")
            if sep:
                kvs[key] = value
        return kvs

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def add(self, tag: str) -> None:
        if tag not in self._tags:
            self._tags.append(tag)
        self._dirty = True

    def remove(self, tag: str) -> None:
        self._tags = [t for t in self._tags if t != tag]
        self._dirty = True

    def add_kv(self, key: str, value: str) -> None:
        self.add(f"{key}={value}")

    def replace_kv(self, key: str, value: str) -> None:
        self._strip_key(key)
        self._tags.append(f"{key}={value}")
        self._dirty = True

    def remove_kv(self, key: str) -> None:
        self._strip_key(key)
        self._dirty = True

    def _strip_key(self, key: str) -> None:
        prefix = f"{key}="
        self._tags = [t for t in self._tags if not t.startswith(prefix)]

    # ------------------------------------------------------------------
    # Server sync
    # ------------------------------------------------------------------

    async def sync(self) -> TagSyncResult:
        result = await replace_tags(self.room, self._namespace, self._tags)
        self._dirty = False
        return result

    async def close(self) -> Optional[TagSyncResult]:
        """Flush pending changes, if any.  Returns ``None`` when clean."""
        if not self._dirty:
            return None
        return await self.sync()
