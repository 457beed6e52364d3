"""
Headjack - Matrix bot runner
Entry point for running a bot straight from a config file.

Startup sequence:
  1. Load config.yaml (command-line flags override single keys)
  2. Configure logging
  3. Restore the previous session or log in
  4. Initial sync
  5. Enable autojoin and register the demo commands
  6. Sync until SIGINT/SIGTERM
"""

import argparse
import asyncio
import logging
import logging.handlers
import signal
import sys
from pathlib import Path
from typing import Optional

from headjack.bot import Bot
from headjack.errors import ConfigError, SessionError
from headjack.infra.config import BotConfig, Login, config_from_dict, load_config
from headjack.infra.paths import LOG_DIR_NAME
from headjack.interfaces.room import Room

CONFIG_FILE = Path("config.yaml")
LOG_FILE_NAME = "headjack.log"

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level_name: str, log_dir: Path) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, level_name.upper(), logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    console.setLevel(level)

    fh = logging.handlers.TimedRotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(fh)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="headjack", description="Run a headjack Matrix bot")
    p.add_argument("--config", type=Path, default=CONFIG_FILE,
                   help="YAML config file (default: %(default)s)")
    p.add_argument("--homeserver", help="homeserver URL, e.g. https://matrix.org")
    p.add_argument("--username", help="bot account username")
    p.add_argument("--password", help="bot account password (prompted for when unset)")
    p.add_argument("--name", help="bot name; defaults to the username")
    p.add_argument("--allow-list", help="regex of user IDs the bot answers to")
    p.add_argument("--state-dir", help="directory for the session file and logs")
    p.add_argument("--command-prefix", help="prefix marking a message as a command")
    p.add_argument("--room-size-limit", type=int, help="leave rooms with more members than this")
    p.add_argument("--log-level", help="console log level (DEBUG, INFO, ...)")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> BotConfig:
    """Load the config file, if any, and apply command-line overrides.

    Without a config file the homeserver and username flags are required.
    """
    if args.config.exists():
        cfg = load_config(args.config)
    elif args.homeserver and args.username:
        cfg = config_from_dict({
            "login": {"homeserver_url": args.homeserver, "username": args.username},
        })
    else:
        raise ConfigError(
            f"{args.config} not found. Copy config.yaml.example "
            "or pass --homeserver and --username."
        )

    cfg.login = Login(
        homeserver_url=args.homeserver or cfg.login.homeserver_url,
        username=args.username or cfg.login.username,
        password=args.password if args.password is not None else cfg.login.password,
    )
    overrides = {
        "name": args.name,
        "allow_list": args.allow_list,
        "state_dir": args.state_dir,
        "command_prefix": args.command_prefix,
        "room_size_limit": args.room_size_limit,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(cfg, key, value)
    return cfg.validate()


# ---------------------------------------------------------------------------
# Demo commands
# ---------------------------------------------------------------------------

async def _ping(sender: str, body: str, room: Room) -> None:
    await room.send_text("pong")


def _make_echo(prefix: str):
    async def _echo(sender: str, body: str, room: Room) -> bool:
        text = body[len(prefix):].strip()
        # Drop the command name itself.
        _, _, text = text.partition(" ")
        text = text.strip()
        if not text:
            return False
        await room.send_text(text)
        return True
    return _echo


def register_demo_commands(bot: Bot) -> None:
    bot.register_text_command("ping", None, "Check that the bot is alive", _ping)
    bot.register_text_command("echo", "<text>", "Repeat <text>", _make_echo(bot.command_prefix))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        cfg = build_config(args)
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    bot = Bot(cfg)
    setup_logging(cfg.log_level, bot.state_dir / LOG_DIR_NAME)

    try:
        await bot.login()
    except SessionError as exc:
        logger.error("Could not log in: %s", exc)
        await bot.close()
        return 1

    try:
        await bot.sync()
        bot.join_rooms(_log_joined)
        register_demo_commands(bot)

        run_task = asyncio.create_task(bot.run(), name="sync")
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, run_task.cancel)

        try:
            await run_task
        except asyncio.CancelledError:
            logger.info("Shutdown requested")
    except SessionError as exc:
        logger.error("Session lost: %s", exc)
        return 1
    finally:
        await bot.close()

    logger.info("Headjack shutdown complete")
    return 0


async def _log_joined(room: Room) -> None:
    logger.info("Now active in %s", room.room_id)


def run() -> None:
    """Entry point for the `headjack` console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
