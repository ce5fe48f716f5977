"""
Tests for authentication endpoints (signup and login).

These tests verify:
  - Signup creates a member and a default account, and returns a token
  - Emails are case-insensitive and phone numbers are stored as digits
  - Duplicate email signup is rejected (409 Conflict)
  - Wrong password and unknown email get the same 401 (anti-enumeration)
  - Malformed bodies are rejected with 400
  - Protected endpoints require a valid token, and roles are enforced
"""

import uuid

from sqlalchemy import select

from ledger_api.models.account import Account, AccountStatus, AccountType
from ledger_api.models.user import User


SIGNUP = {
    "email": "newuser@example.com",
    "password": "StrongPass99!",
    "firstName": "Jane",
    "lastName": "Doe",
}


class TestSignup:
    """Tests for POST /auth/signup."""

    async def test_signup_success(self, client):
        response = await client.post("/auth/signup", json=SIGNUP)
        assert response.status_code == 201
        data = response.json()
        assert data["email"] == "newuser@example.com"
        assert data["userType"] == "member"
        assert data["token"]
        assert len(data["accountNumber"]) == 10

    async def test_signup_opens_default_account(self, client, db_session):
        response = await client.post("/auth/signup", json={**SIGNUP, "currency": "ghs"})
        account_id = uuid.UUID(response.json()["accountId"])

        account = (
            await db_session.execute(select(Account).where(Account.id == account_id))
        ).scalar_one()
        assert account.currency == "GHS"
        assert account.account_type == AccountType.PERSONAL
        assert account.status == AccountStatus.ACTIVE
        assert account.balance_cents == 0

    async def test_signup_defaults_to_usd(self, client, db_session):
        response = await client.post("/auth/signup", json=SIGNUP)
        account_id = uuid.UUID(response.json()["accountId"])
        account = (
            await db_session.execute(select(Account).where(Account.id == account_id))
        ).scalar_one()
        assert account.currency == "USD"

    async def test_signup_unsupported_currency(self, client):
        response = await client.post("/auth/signup", json={**SIGNUP, "currency": "XYZ"})
        assert response.status_code == 400
        assert response.json()["error_type"] == "validation_error"

    async def test_signup_normalizes_email_and_phone(self, client, db_session):
        response = await client.post(
            "/auth/signup",
            json={**SIGNUP, "email": "Mixed.Case@Example.com", "phoneNumber": "+1 (555) 123-4567"},
        )
        assert response.status_code == 201
        user = (
            await db_session.execute(select(User).where(User.email == "mixed.case@example.com"))
        ).scalar_one()
        assert user.phone_number == "15551234567"

    async def test_signup_duplicate_email(self, client):
        assert (await client.post("/auth/signup", json=SIGNUP)).status_code == 201
        response = await client.post(
            "/auth/signup", json={**SIGNUP, "email": "NewUser@example.com"}
        )
        assert response.status_code == 409
        assert response.json()["error_type"] == "duplicate_email"

    async def test_signup_short_password(self, client):
        response = await client.post("/auth/signup", json={**SIGNUP, "password": "short"})
        assert response.status_code == 400
        assert response.json()["error_type"] == "validation_error"

    async def test_signup_phone_too_long(self, client):
        response = await client.post(
            "/auth/signup", json={**SIGNUP, "phoneNumber": "+1 " + "5" * 20}
        )
        assert response.status_code == 400
        assert response.json()["error_type"] == "validation_error"

    async def test_signup_invalid_email(self, client):
        response = await client.post("/auth/signup", json={**SIGNUP, "email": "not-an-email"})
        assert response.status_code == 400

    async def test_signup_accepts_snake_case(self, client):
        response = await client.post(
            "/auth/signup",
            json={"email": "snake@example.com", "password": "StrongPass99!",
                  "first_name": "Snake", "last_name": "Case"},
        )
        assert response.status_code == 201


class TestLogin:
    """Tests for POST /auth/login."""

    async def test_login_success(self, client):
        await client.post("/auth/signup", json=SIGNUP)
        response = await client.post(
            "/auth/login", json={"email": "NEWUSER@example.com", "password": "StrongPass99!"}
        )
        assert response.status_code == 200
        assert response.json()["tokenType"] == "bearer"

    async def test_wrong_password(self, client):
        await client.post("/auth/signup", json=SIGNUP)
        response = await client.post(
            "/auth/login", json={"email": "newuser@example.com", "password": "WrongPass99!"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"

    async def test_unknown_email_same_error(self, client):
        response = await client.post(
            "/auth/login", json={"email": "ghost@example.com", "password": "StrongPass99!"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"


class TestAuthorization:
    """Token and role checks on protected endpoints."""

    async def test_missing_token(self, client):
        response = await client.get("/payments/transactions")
        assert response.status_code == 401

    async def test_garbage_token(self, client):
        response = await client.get(
            "/payments/transactions", headers={"Authorization": "Bearer not.a.jwt"}
        )
        assert response.status_code == 401

    async def test_admin_blocked_from_member_endpoints(self, admin_client):
        response = await admin_client.get("/payments/transactions")
        assert response.status_code == 403

    async def test_member_blocked_from_admin_endpoints(self, member_client):
        response = await member_client.get("/admin/accounts")
        assert response.status_code == 403

    async def test_health_is_public(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
