"""Operator commands: provision publishers and their API keys."""

from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from newsletter.auth.api_key import create_publisher
from newsletter.database import AsyncSessionLocal, close_db


async def run_create_publisher(
    username: str,
    key_name: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> int:
    async with session_factory() as session:
        try:
            user, issued = await create_publisher(session, username, key_name)
        except IntegrityError:
            await session.rollback()
            print(
                f"Cannot create publisher {username!r}: name taken or not matching ^[a-z0-9_]{{3,32}}$",
                file=sys.stderr,
            )
            return 1

    print(f"Created publisher {user.username} ({user.id})")
    print(f"API key (shown once): {issued.plaintext}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Newsletter administration")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create-publisher", help="Create a publisher and issue an API key")
    create.add_argument("username")
    create.add_argument("--key-name", default=None, help="Label stored with the key")

    args = parser.parse_args()

    async def _run() -> int:
        try:
            return await run_create_publisher(args.username, args.key_name)
        finally:
            await close_db()

    return asyncio.run(_run())


if __name__ == "__main__":
    sys.exit(main())
