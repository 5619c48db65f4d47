"""Jarvis entry point."""

import logging
import sys

from dotenv import find_dotenv, load_dotenv

from .config import Settings, build_store, load_settings
from .logging import configure_logger, get_logger
from .memory import MemoryManager
from .memory.store import PersistenceError

USAGE = """Usage: jarvis <command>

Commands:
  bot              Run the Telegram bot
  status           Show how many users, turns and facts are stored
  purge <user_id>  Delete everything stored about a user
"""


def show_status(settings: Settings) -> int:
    store = build_store(settings)
    try:
        stats = MemoryManager(store).stats()
    finally:
        store.close()

    print(f"Users: {stats.users}")
    print(f"Turns: {stats.turns}")
    print(f"Facts: {stats.facts}")
    return 0


def purge_user(settings: Settings, user_id: str) -> int:
    store = build_store(settings)
    try:
        existed = MemoryManager(store).purge_user(user_id)
    finally:
        store.close()

    get_logger().log("user_purged", user_id=user_id, existed=existed)
    if not existed:
        print(f"No data stored for {user_id}")
        return 1
    print(f"Purged {user_id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    load_dotenv(find_dotenv(usecwd=True))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args = sys.argv[1:] if argv is None else argv
    if not args:
        print(USAGE, file=sys.stderr)
        return 2

    try:
        settings = load_settings()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    assert settings.data_dir is not None
    configure_logger(settings.log_dir or settings.data_dir / "logs")

    command = args[0]

    try:
        if command == "bot":
            from .telegram import TelegramBot

            TelegramBot(settings).run()
            return 0

        if command == "status":
            return show_status(settings)

        if command == "purge" and len(args) == 2:
            return purge_user(settings, args[1])
    except (ValueError, PersistenceError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(USAGE, file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main())
