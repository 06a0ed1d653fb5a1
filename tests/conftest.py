"""Shared pytest fixtures for the Pledgr test suite.

Provides:
- Settings pointing at a throwaway SQLite file (cheap bcrypt, loose rate limits)
- The FastAPI app, a TestClient and a raw DB session on the same database
- Helpers to register users and build a campaign with a pledge level
- A fake payment provider that returns canned receipts
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from pledgr.config import Settings
from pledgr.errors import PaymentDeclinedError, PaymentError
from pledgr.main import create_app
from pledgr.payments import Receipt

STRONG_PASSWORD = "Sup3r$ecret"


# ---------------------------------------------------------------------------
# Settings & app
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        environment="test",
        database_url=f"sqlite:///{tmp_path / 'pledgr-test.db'}",
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        rate_limit_general=10_000,
        rate_limit_auth=10_000,
        log_level="WARNING",
    )


@pytest.fixture
def app(settings: Settings):
    application = create_app(settings)
    yield application
    application.state.engine.dispose()


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_app(tmp_path: Path, settings: Settings):
    """Build an extra app with overridden settings (own database file)."""
    built = []

    def _make(**overrides):
        path = tmp_path / f"extra-{len(built)}.db"
        application = create_app(replace(settings, database_url=f"sqlite:///{path}", **overrides))
        built.append(application)
        return application

    yield _make
    for application in built:
        application.state.engine.dispose()


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------

def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register(client: TestClient):
    """Register through the API; returns (token, user dict)."""

    def _register(name: str = "Ada", email: str = "ada@example.com", password: str = STRONG_PASSWORD):
        resp = client.post("/auth/register", json={"name": name, "email": email, "password": password})
        assert resp.status_code == 200, resp.text
        body = resp.json()
        return body["token"], body["user"]

    return _register


@pytest.fixture
def creator(client: TestClient, register):
    """A registered creator with one campaign and one 8.00 pledge level."""
    token, user = register("Ada", "ada@example.com")
    resp = client.post(
        "/campaigns",
        json={
            "name": "Ada Trio",
            "title": "Jazz Album",
            "category": "music",
            "description": "Recording our first record",
            "goal": 5000,
        },
        headers=bearer(token),
    )
    assert resp.status_code == 200, resp.text
    campaign_id = resp.json()["campaignId"]
    resp = client.post(
        f"/campaigns/{campaign_id}/levels",
        json={"name": "Supporter", "amount": 8.0, "description": "Thanks!",
              "benefits": ["Digital download", "Name in credits"]},
        headers=bearer(token),
    )
    assert resp.status_code == 200, resp.text
    return {"token": token, "user": user, "campaign_id": campaign_id, "level_id": resp.json()["levelId"]}


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class FakeProvider:
    """Captures every reference except those listed in ``declined`` (refused)
    or ``unavailable`` (provider could not be reached)."""

    name = "fake"

    def __init__(self, declined: tuple = (), unavailable: tuple = ()):
        self.declined = set(declined)
        self.unavailable = set(unavailable)
        self.calls = []

    def capture_payment(self, reference: str, expected_amount: Decimal) -> Receipt:
        self.calls.append((reference, expected_amount))
        if reference in self.declined:
            raise PaymentDeclinedError("Payment was denied")
        if reference in self.unavailable:
            raise PaymentError("Failed to verify payment")
        return Receipt(amount=expected_amount, external_id=reference, provider=self.name)


@pytest.fixture
def provider(app) -> FakeProvider:
    fake = FakeProvider(declined=("DECLINED-1",), unavailable=("FLAKY-1",))
    app.state.payment_provider = fake
    return fake
