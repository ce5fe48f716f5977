#!/usr/bin/env python3
"""
Promote an existing user to ADMIN. Run on the server.

There is no promotion endpoint: admin provisioning is an operator action.

Usage:
    python demo/promote_admin.py admin@ledgerdemo.com
"""
import argparse
import asyncio

from sqlalchemy import update

from ledger_api.database import AsyncSessionLocal, engine
from ledger_api.models.user import User, UserType
from ledger_api.services.lookup_service import normalize_email


async def promote(email: str) -> int:
    """Set the user's role to ADMIN, return the number of rows updated."""
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            update(User)
            .where(User.email == normalize_email(email))
            .values(user_type=UserType.ADMIN)
        )
        await session.commit()
        return result.rowcount


async def main() -> None:
    parser = argparse.ArgumentParser(description="Promote a user to ADMIN")
    parser.add_argument("email")
    args = parser.parse_args()

    rows = await promote(args.email)
    print(f"Rows updated: {rows}")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
