#!/usr/bin/env python3
"""
Demo seed script — populates the database with sample data for demos.

!! NOT FOR PRODUCTION !!
This script creates test users with known passwords, gives them opening
balances directly in the database, and sends a handful of transfers
through the API (including one deliberate retry, to show a replay) and
one payment request that gets paid.

Usage:
    # With the API server running on localhost:8000:
    python demo/seed.py

    # Reset the database and re-seed:
    python demo/seed.py --reset

    # Custom server URL:
    python demo/seed.py --base-url http://localhost:9000

Login credentials after seeding:
    ┌──────────────────────────────┬───────────────────┬────────┐
    │ Email                        │ Password          │ Role   │
    ├──────────────────────────────┼───────────────────┼────────┤
    │ admin@ledgerdemo.com         │ AdminDemo123!     │ ADMIN  │
    │ kwame.mensah@example.com     │ KwameDemo123!     │ MEMBER │
    │ ama.owusu@example.com        │ AmaDemo123!       │ MEMBER │
    │ tunde.bakare@example.com     │ TundeDemo123!     │ MEMBER │
    │ wanjiru.kamau@example.com    │ WanjiruDemo123!   │ MEMBER │
    └──────────────────────────────┴───────────────────┴────────┘
"""

import argparse
import asyncio
import random
import sys
import uuid
from decimal import Decimal
from pathlib import Path

import httpx
from sqlalchemy import update
from sqlalchemy.engine import make_url

from ledger_api.config import settings
from ledger_api.database import AsyncSessionLocal, engine
from ledger_api.models.account import Account
from ledger_api.money import to_minor_units

from promote_admin import promote

BASE_URL = "http://localhost:8000"

# ---------------------------------------------------------------------------
# Demo users
# ---------------------------------------------------------------------------

ADMIN = {
    "email": "admin@ledgerdemo.com",
    "password": "AdminDemo123!",
    "firstName": "Admin",
    "lastName": "User",
}

MEMBERS = [
    {
        "email": "kwame.mensah@example.com",
        "password": "KwameDemo123!",
        "firstName": "Kwame",
        "lastName": "Mensah",
        "phoneNumber": "+233 24 555 0101",
        "currency": "GHS",
        "opening_balance": "2500.00",
    },
    {
        "email": "ama.owusu@example.com",
        "password": "AmaDemo123!",
        "firstName": "Ama",
        "lastName": "Owusu",
        "phoneNumber": "+233 20 555 0102",
        "currency": "GHS",
        "opening_balance": "900.00",
    },
    {
        "email": "tunde.bakare@example.com",
        "password": "TundeDemo123!",
        "firstName": "Tunde",
        "lastName": "Bakare",
        "phoneNumber": "+234 803 555 0103",
        "currency": "USD",
        "opening_balance": "1200.00",
    },
    {
        "email": "wanjiru.kamau@example.com",
        "password": "WanjiruDemo123!",
        "firstName": "Wanjiru",
        "lastName": "Kamau",
        "phoneNumber": "+254 712 555 010",
        "currency": "USD",
        "opening_balance": "300.00",
    },
]

DESCRIPTIONS = [
    "Rent share", "Dinner", "Market run", "School fees", "Airtime",
    "Birthday gift", "Fuel", "Electricity token",
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def log(msg: str) -> None:
    print(f"  {msg}")


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


async def signup(client: httpx.AsyncClient, user: dict) -> dict:
    """Sign up a user, return the signup payload (token, userId, accountId...)."""
    body = {k: v for k, v in user.items() if k not in ("opening_balance",)}
    resp = await client.post(f"{BASE_URL}/auth/signup", json=body)
    resp.raise_for_status()
    return resp.json()


async def fund_account(account_id: str, amount: str, currency: str) -> None:
    """Opening balances are set directly; there is no deposit endpoint."""
    cents = to_minor_units(Decimal(amount), currency)
    async with AsyncSessionLocal() as session:
        await session.execute(
            update(Account)
            .where(Account.id == uuid.UUID(account_id))
            .values(balance_cents=cents, available_balance_cents=cents)
        )
        await session.commit()


async def do_transfer(
    client: httpx.AsyncClient, sender: dict, recipient: dict | str,
    amount: str, currency: str, description: str, key: str | None = None,
) -> httpx.Response:
    """Send to a member's account, or to an email/phone when recipient is a string."""
    body = {
        "senderAccountId": sender["accountId"],
        "amount": amount,
        "currency": currency,
        "description": description,
        "idempotencyKey": key or str(uuid.uuid4()),
    }
    if isinstance(recipient, str):
        body["recipientIdentifier"] = recipient
    else:
        body["recipientAccountId"] = recipient["accountId"]
    return await client.post(
        f"{BASE_URL}/payments/transfer", json=body, headers=auth_header(sender["token"])
    )


# ---------------------------------------------------------------------------
# Seed logic
# ---------------------------------------------------------------------------

async def seed(base_url: str) -> None:
    global BASE_URL
    BASE_URL = base_url

    print("\n========================================")
    print("  DEMO SEED — NOT FOR PRODUCTION")
    print("========================================\n")

    async with httpx.AsyncClient(timeout=30.0) as client:
        # Health check
        try:
            health = await client.get(f"{BASE_URL}/health")
            health.raise_for_status()
        except (httpx.ConnectError, httpx.HTTPStatusError):
            print(f"  ERROR: Cannot connect to {BASE_URL}")
            print("  Start the server first: uvicorn ledger_api.main:app --reload\n")
            sys.exit(1)

        # --- Admin ---
        print("Creating admin user...")
        await signup(client, ADMIN)
        await promote(ADMIN["email"])
        log(f"Admin: {ADMIN['email']} / {ADMIN['password']}")

        # --- Members ---
        members: list[dict] = []
        for member in MEMBERS:
            print(f"\nCreating {member['firstName']} {member['lastName']}...")
            data = await signup(client, member)
            await fund_account(data["accountId"], member["opening_balance"], member["currency"])
            log(f"Login: {member['email']} / {member['password']}")
            log(f"Account {data['accountNumber']}: {member['opening_balance']} {member['currency']}")
            members.append({**data, "currency": member["currency"], "phone": member["phoneNumber"]})

        # --- Transfers ---
        print("\nCreating transfers...")
        by_currency: dict[str, list[dict]] = {}
        for m in members:
            by_currency.setdefault(m["currency"], []).append(m)

        for currency, group in by_currency.items():
            if len(group) < 2:
                continue
            a, b = group[0], group[1]
            for _ in range(3):
                amount = f"{random.randint(5, 80)}.{random.randint(0, 99):02d}"
                resp = await do_transfer(client, a, b, amount, currency, random.choice(DESCRIPTIONS))
                if resp.status_code == 200:
                    log(f"{a['email']} -> {b['email']}: {amount} {currency}")

            # By phone number, in a different format from signup
            resp = await do_transfer(client, b, a["phone"], "12.50", currency, "Paid back")
            if resp.status_code == 200:
                log(f"{b['email']} -> {a['phone']} (by phone): 12.50 {currency}")

        # --- A retried transfer: the second call replays the first ---
        print("\nDemonstrating an idempotent retry...")
        a, b = by_currency["USD"][0], by_currency["USD"][1]
        key = f"demo-retry-{uuid.uuid4()}"
        first = await do_transfer(client, a, b, "20.00", "USD", "Retried payment", key=key)
        second = await do_transfer(client, a, b, "20.00", "USD", "Retried payment", key=key)
        if first.status_code == 200 and second.status_code == 200:
            log(f"Reference {first.json()['reference']}, replayed={second.json()['replayed']}")

        # --- A payment request, paid by the payer ---
        print("\nCreating a payment request...")
        kwame, ama = by_currency["GHS"][0], by_currency["GHS"][1]
        resp = await client.post(
            f"{BASE_URL}/payments/requests",
            json={
                "accountId": ama["accountId"],
                "payerIdentifier": kwame["email"],
                "amount": "45.00",
                "currency": "GHS",
                "description": "Share of the taxi",
            },
            headers=auth_header(ama["token"]),
        )
        resp.raise_for_status()
        request_id = resp.json()["id"]
        resp = await client.post(
            f"{BASE_URL}/payments/requests/{request_id}/pay",
            json={"payerAccountId": kwame["accountId"]},
            headers=auth_header(kwame["token"]),
        )
        if resp.status_code == 200:
            log(f"{kwame['email']} paid {ama['email']}'s request: 45.00 GHS")

        # --- An overdraft attempt, rejected without moving money ---
        resp = await do_transfer(client, b, a, "100000.00", "USD", "Too much")
        log(f"Overdraft attempt: HTTP {resp.status_code} {resp.json().get('error_type')}")

    await engine.dispose()

    # --- Summary ---
    print("\n========================================")
    print("  SEED COMPLETE — Login Credentials")
    print("========================================")
    print(f"\n  {'Email':<30s} {'Password':<20s} {'Role'}")
    print(f"  {'─' * 30} {'─' * 20} {'─' * 6}")
    print(f"  {ADMIN['email']:<30s} {ADMIN['password']:<20s} ADMIN")
    for m in MEMBERS:
        print(f"  {m['email']:<30s} {m['password']:<20s} MEMBER")
    print()


def reset_database() -> None:
    """Delete the SQLite database file so the server recreates it on restart."""
    url = make_url(settings.DATABASE_URL)
    if url.get_backend_name() != "sqlite" or not url.database:
        print(f"\n  Refusing to reset a non-file database: {url.render_as_string()}\n")
        return

    db_path = Path(url.database).resolve()
    if db_path.exists():
        db_path.unlink()
        print(f"\n  Deleted {db_path}")
        print("  Restart the server to recreate empty tables.\n")
    else:
        print(f"\n  No database found at {db_path}\n")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Demo seed script — NOT FOR PRODUCTION",
        epilog="Creates sample users, balances and transfers for demos.",
    )
    parser.add_argument(
        "--base-url", default="http://localhost:8000",
        help="Base URL of the running API (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--reset", action="store_true",
        help="Delete the database file and exit (restart server to recreate)",
    )
    args = parser.parse_args()

    if args.reset:
        reset_database()
        return

    await seed(args.base_url)


if __name__ == "__main__":
    asyncio.run(main())
