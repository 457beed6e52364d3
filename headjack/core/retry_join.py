"""
Retry-Join Policy

Drives the autojoin of a single invited room:

  Attempt ──ok──► Joined ──too large──► leave (best effort) ──► REJECTED
     │                  └──otherwise──► post-join callback   ──► ACTIVE
     └─fail─► Backoff: sleep(delay), delay *= 2
                 └─ delay > max_delay ──► GAVE_UP

Homeservers can deliver an invite before the invited user is able to join
(synapse#4345), so failures are expected and retried with exponential
backoff starting at two seconds and giving up past one hour.

Each invite runs as its own asyncio task; nothing here blocks the sync
loop or other invites.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Optional

from headjack.errors import JoinFailed

logger = logging.getLogger(__name__)

INITIAL_DELAY = 2
MAX_DELAY = 3600

JoinCallback = Callable[[Any], Awaitable[Optional[bool]]]
SleepFn = Callable[[float], Awaitable[None]]


class JoinOutcome(enum.Enum):
    ACTIVE = "active"
    REJECTED = "rejected"
    GAVE_UP = "gave_up"


class RetryJoin:
    """State machine for one invite.  Create it, then ``await run()``.

    *room* is a room handle exposing ``room_id``, ``join()`` (raising
    ``JoinFailed``), ``leave()`` and ``active_member_count()``.
    """

    def __init__(
        self,
        room: Any,
        room_size_limit: Optional[int] = None,
        callback: Optional[JoinCallback] = None,
        *,
        initial_delay: int = INITIAL_DELAY,
        max_delay: int = MAX_DELAY,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.room = room
        self.room_size_limit = room_size_limit
        self.callback = callback
        self.delay = initial_delay
        self.max_delay = max_delay
        self.attempts = 0
        self._sleep = sleep

    async def run(self) -> JoinOutcome:
        room_id = self.room.room_id
        logger.info("Autojoining room %s", room_id)

        if not await self._join_with_backoff():
            return JoinOutcome.GAVE_UP

        if await self._is_room_too_large():
            logger.warning("Room %s has too many members, refusing to join", room_id)
            try:
                await self.room.leave()
            except Exception as exc:  # noqa: BLE001
                logger.error("Error leaving room %s: %s", room_id, exc)
            return JoinOutcome.REJECTED

        logger.info("Successfully joined room %s", room_id)
        if self.callback is not None:
            try:
                result = await self.callback(self.room)
            except Exception:  # noqa: BLE001
                logger.exception("Error in join callback for room %s", room_id)
            else:
                if result is False:
                    logger.error("Join callback for room %s reported failure", room_id)
        return JoinOutcome.ACTIVE

    async def _join_with_backoff(self) -> bool:
        room_id = self.room.room_id
        while True:
            self.attempts += 1
            try:
                await self.room.join()
                return True
            except JoinFailed as exc:
                logger.warning(
                    "Failed to join room %s (%s), retrying in %ds",
                    room_id, exc.cause, self.delay,
                )
                await self._sleep(self.delay)
                self.delay *= 2
                if self.delay > self.max_delay:
                    logger.error("Can't join room %s (%s)", room_id, exc.cause)
                    return False

    async def _is_room_too_large(self) -> bool:
        if self.room_size_limit is None:
            return False
        try:
            members = await self.room.active_member_count()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not count members of %s: %s", self.room.room_id, exc)
            return False
        return members > self.room_size_limit
