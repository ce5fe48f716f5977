"""
Test fixtures for the Ledger Transfer API test suite.

  - db_engine / db_session: Fresh in-memory SQLite database for each test
  - file_engine / session_factory: File-backed SQLite database for tests that
    need several connections at once (concurrency, in-flight replays)
  - client: Async HTTP test client (unauthenticated)
  - member_client / second_member_client: Signed-up MEMBER users with a token
  - admin_client: A signed-up user promoted to ADMIN
  - make_account / fund: Provision accounts and set balances directly

Key design decisions:
  - In-memory SQLite (sqlite+aiosqlite://) shares one connection across
    sessions, which is fast and isolated but cannot run two transactions
    at once. Concurrency tests use a database file under tmp_path instead.
  - get_db is overridden so the application code runs exactly as in
    production against the test database.
  - Users are created through the real signup endpoint; admins are
    promoted afterwards with a direct UPDATE, the way an operator would
    provision them.
"""

import os

# Settings are read at import time; SECRET_KEY has no default
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")

import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import ledger_api.models  # noqa: F401
from ledger_api.database import Base, get_db
from ledger_api.exceptions import LedgerAPIError, StorageFailureError
from ledger_api.main import app
from ledger_api.models.account import Account, AccountStatus
from ledger_api.models.user import User, UserType
from ledger_api.services.account_store import AccountStore


TEST_DATABASE_URL = "sqlite+aiosqlite://"


async def _create_engine(url: str):
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


async def _drop_engine(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = await _create_engine(TEST_DATABASE_URL)
    yield engine
    await _drop_engine(engine)


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Provide an async session bound to the test engine."""
    async_session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """A file-backed database; every session gets its own connection."""
    engine = await _create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    yield engine
    await _drop_engine(engine)


@pytest.fixture
def session_factory(file_engine):
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def client(db_engine):
    """
    Async HTTP test client with the test database injected.

    The override mirrors get_db's commit/rollback policy.
    """
    async_session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with async_session() as session:
            try:
                yield session
                await session.commit()
            except StorageFailureError:
                await session.rollback()
                raise
            except LedgerAPIError:
                await session.commit()
                raise
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def _signup(client: AsyncClient, email: str, password: str, first: str, last: str, **extra):
    response = await client.post(
        "/auth/signup",
        json={
            "email": email,
            "password": password,
            "firstName": first,
            "lastName": last,
            **extra,
        },
    )
    assert response.status_code == 201, f"Signup failed: {response.text}"
    return response.json()


async def _authenticated(client: AsyncClient, data: dict) -> AsyncClient:
    """A second AsyncClient on the same app, carrying the user's token."""
    ac = AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {data['token']}"},
    )
    ac.user = data  # signup payload: userId, accountId, ...
    return ac


@pytest_asyncio.fixture
async def member_client(client):
    """Member Ada Lovelace, phone +233 24 412 3456, default USD account."""
    data = await _signup(
        client, "ada@example.com", "SecurePass123!", "Ada", "Lovelace",
        phoneNumber="+233 24 412 3456",
    )
    ac = await _authenticated(client, data)
    yield ac
    await ac.aclose()


@pytest_asyncio.fixture
async def second_member_client(client):
    """Member Grace Hopper, default USD account."""
    data = await _signup(
        client, "grace@example.com", "SecurePass456!", "Grace", "Hopper",
        phoneNumber="(415) 555-0199",
    )
    ac = await _authenticated(client, data)
    yield ac
    await ac.aclose()


@pytest_asyncio.fixture
async def admin_client(client, db_engine):
    """A user promoted to ADMIN directly in the database."""
    data = await _signup(client, "admin@example.com", "AdminPass123!", "Admin", "User")

    async_session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        await session.execute(
            update(User)
            .where(User.id == uuid.UUID(data["userId"]))
            .values(user_type=UserType.ADMIN)
        )
        await session.commit()

    login = await client.post(
        "/auth/login", json={"email": "admin@example.com", "password": "AdminPass123!"}
    )
    assert login.status_code == 200
    ac = await _authenticated(client, {**data, "token": login.json()["token"]})
    yield ac
    await ac.aclose()


async def set_balance(session: AsyncSession, account_id, amount: str) -> None:
    """Provision a balance directly; transfers are the only way money moves otherwise."""
    cents = int(Decimal(amount) * 100)
    await session.execute(
        update(Account)
        .where(Account.id == uuid.UUID(str(account_id)))
        .values(balance_cents=cents, available_balance_cents=cents)
    )
    await session.commit()


async def set_status(session: AsyncSession, account_id, status: AccountStatus) -> None:
    await session.execute(
        update(Account).where(Account.id == uuid.UUID(str(account_id))).values(status=status)
    )
    await session.commit()


@pytest.fixture
def fund(db_engine):
    """fund(account_id, "1000.00") sets both balances of an account."""
    async_session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def _fund(account_id, amount: str) -> None:
        async with async_session() as session:
            await set_balance(session, account_id, amount)

    return _fund


async def make_user(session: AsyncSession, email: str, phone_number: str | None = None) -> User:
    user = User(
        email=email,
        phone_number=phone_number,
        first_name=email.split("@")[0].title(),
        last_name="Test",
        hashed_password="not-a-real-hash",
    )
    session.add(user)
    await session.flush()
    return user


@pytest.fixture
def make_account(db_session):
    """
    make_account("1000.00", currency="USD") -> Account, committed.

    Each call creates a fresh user owning one account. The account is
    returned detached: the engine rolls back db_session on failed
    transfers, which would otherwise expire it and turn a later `.id`
    into a lazy load outside the event loop.
    """
    counter = {"n": 0}

    async def _make(
        balance: str = "0.00",
        currency: str = "USD",
        email: str | None = None,
        phone_number: str | None = None,
    ) -> Account:
        counter["n"] += 1
        user = await make_user(
            db_session, email or f"user{counter['n']}@example.com", phone_number
        )
        account = await AccountStore(db_session).create_account(
            user.id, currency, opening_balance_cents=int(Decimal(balance) * 100)
        )
        await db_session.commit()
        db_session.expunge(account)
        return account

    return _make


@pytest.fixture
def make_file_account(session_factory):
    """make_account for the file-backed database."""

    async def _make(balance: str = "0.00", currency: str = "USD") -> Account:
        async with session_factory() as session:
            user = await make_user(session, f"{uuid.uuid4().hex[:12]}@example.com")
            account = await AccountStore(session).create_account(
                user.id, currency, opening_balance_cents=int(Decimal(balance) * 100)
            )
            await session.commit()
            return account

    return _make
