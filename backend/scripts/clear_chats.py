"""Delete every conversation (and all of its turns) for one owner.

Usage:
    python -m scripts.clear_chats --owner <owner-id>
    python -m scripts.clear_chats --owner <owner-id> --yes --yes-really
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent dir to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chatsync.core.config import settings
from chatsync.core.database import engine
from chatsync.core.logging_config import setup_logging
from chatsync.services.container import build_services


def _confirm(prompt: str, preset: bool) -> bool:
    if preset:
        return True
    return input(f"{prompt} [y/N] ").strip().lower() in ("y", "yes")


async def _run(owner_id: str, confirmations: int) -> None:
    services = build_services()
    try:
        report = await services.deletion.clear_all(owner_id, confirmations=confirmations)
    finally:
        await engine.dispose()
    print(
        f"Deleted {report.conversations_deleted} conversation(s) "
        f"and {report.turns_deleted} message(s) for {owner_id}."
    )


def main():
    parser = argparse.ArgumentParser(description="Delete all chats for an owner")
    parser.add_argument("--owner", required=True, help="Owner id")
    parser.add_argument("--yes", action="store_true", help="Skip the first confirmation")
    parser.add_argument("--yes-really", action="store_true", help="Skip the second confirmation")
    args = parser.parse_args()

    setup_logging(settings.log_level, settings.log_file)

    confirmations = 0
    if _confirm(f"Delete ALL chats for {args.owner}? This cannot be undone.", args.yes):
        confirmations += 1
        if _confirm("This is your last chance. Really delete ALL chats?", args.yes_really):
            confirmations += 1

    if confirmations < 2:
        print("Aborted.")
        return

    asyncio.run(_run(args.owner, confirmations))


if __name__ == "__main__":
    main()
