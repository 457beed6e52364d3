"""
Command Registry & Dispatcher

Maps command names to handlers and routes each inbound text message to
either the matching command handlers or the catch-all text handlers.

A message is a command when its (left-trimmed) body starts with the bot's
command prefix.  The first whitespace-delimited token after the prefix is
the command name; it must equal a registered name exactly.  Command
look-alikes with an unknown name are dropped, they are never forwarded to
the catch-all handlers.

Handlers are called as ``await handler(sender, body, room)``.  A handler
that raises, or returns ``False``, has failed; the failure is logged here
and never reaches the sync loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from headjack.errors import HandlerError

logger = logging.getLogger(__name__)

# (sender, body, room) -> awaitable result.  ``None``/``True`` mean success.
Handler = Callable[[str, str, Any], Awaitable[Optional[bool]]]


# ---------------------------------------------------------------------------
# Prefix helpers
# ---------------------------------------------------------------------------

def command_prefix(name: str, override: Optional[str] = None) -> str:
    """Return the prefix that marks a message as a command.

    Defaults to ``"!<name> "``.  A single-character prefix is used as is,
    anything longer is made to end with a space.
    """
    prefix = override if override is not None else f"!{name} "
    if len(prefix) == 1 or prefix.endswith(" "):
        return prefix
    return f"{prefix} "


def is_command(prefix: str, text: str) -> bool:
    return text.startswith(prefix)


def get_command(prefix: str, text: str) -> Optional[str]:
    """Return the command name in *text*, or ``None`` if it is not a command."""
    if not text.startswith(prefix):
        return None
    parts = text[len(prefix):].split()
    return parts[0] if parts else None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    """A registered command.  Immutable once registered."""
    name: str
    args_hint: Optional[str]
    short_help: Optional[str]
    handler: Handler

    def help_line(self, prefix: str) -> str:
        line = f"`{prefix}{self.name}"
        if self.args_hint:
            line += f" {self.args_hint}"
        line += "`"
        if self.short_help:
            line += f" - {self.short_help}"
        return line


class CommandRegistry:
    """Append-only command table plus the catch-all text handlers.

    Registering the same name twice keeps both entries: both handlers run
    and the help lists the command twice.
    """

    def __init__(self) -> None:
        self._commands: list[Command] = []
        self._text_handlers: list[Handler] = []

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        args_hint: Optional[str],
        short_help: Optional[str],
        handler: Handler,
    ) -> Command:
        command = Command(name=name, args_hint=args_hint, short_help=short_help, handler=handler)
        self._commands.append(command)
        logger.debug("Registered command %r", name)
        return command

    def register_catch_all(self, handler: Handler) -> None:
        self._text_handlers.append(handler)

    @property
    def commands(self) -> tuple[Command, ...]:
        return tuple(self._commands)

    def has_command(self, name: str) -> bool:
        return any(c.name == name for c in self._commands)

    def help_text(self, prefix: str) -> str:
        """Render the help reply, listing commands in registration order."""
        lines = [f"`{prefix}help`", "", "Available commands:"]
        lines.extend(c.help_line(prefix) for c in self._commands)
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, prefix: str, sender: str, body: str, room: Any) -> bool:
        """Route one already-filtered message.

        *body* must already be left-trimmed.  Returns ``True`` if at least
        one handler was invoked.
        """
        if is_command(prefix, body):
            name = get_command(prefix, body)
            matched = [c for c in self._commands if c.name == name]
            if not matched:
                logger.debug("Ignoring unknown command %r from %s", name, sender)
                return False
            for command in matched:
                await self._invoke(command.handler, sender, body, room,
                                   what=f"command: {command.name}")
            return True

        if not self._text_handlers:
            return False
        for handler in self._text_handlers:
            await self._invoke(handler, sender, body, room, what=f"responding to: {body}")
        return True

    async def _invoke(self, handler: Handler, sender: str, body: str, room: Any, *, what: str) -> None:
        try:
            result = await handler(sender, body, room)
        except HandlerError as exc:
            logger.error("Error running %s - %s", what, exc)
            return
        except Exception:  # noqa: BLE001
            logger.exception("Error running %s", what)
            return
        if result is False:
            logger.error("Error running %s - handler reported failure", what)
