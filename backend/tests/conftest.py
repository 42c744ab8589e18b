import os

# Set test environment
os.environ["DEBUG"] = "true"

from collections.abc import AsyncGenerator
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import pytest
import pytest_asyncio
from argon2 import PasswordHasher
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config import Settings
from portal.database import Base
from portal.main import create_app
from portal.schemas.auth import TokenSet
from portal.services.session_store import MemorySessionStore

TEST_DOMAIN = "test-tenant.example.com"
TEST_CLIENT_ID = "test-client-id"
BASE_URL = "https://test"

BASIC_AUTH_USERNAME = "admin"
BASIC_AUTH_PASSWORD = "correct horse battery staple"
BASIC_AUTH_HASH = PasswordHasher().hash(BASIC_AUTH_PASSWORD)


class FakeOIDCClient:
    """Stands in for the identity provider in end-to-end flow tests."""

    def __init__(self) -> None:
        self.claims: dict[str, Any] = {
            "sub": "auth0|abc123",
            "email": "test@example.com",
            "name": "Test User",
            "picture": "https://example.com/avatar.png",
        }
        self.exchange_error: Exception | None = None
        self.verify_error: Exception | None = None
        self.exchanged_codes: list[str] = []

    async def authorization_url(self, state: str) -> str:
        params = {"response_type": "code", "client_id": TEST_CLIENT_ID, "state": state}
        return f"https://{TEST_DOMAIN}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        self.exchanged_codes.append(code)
        if self.exchange_error:
            raise self.exchange_error
        return TokenSet(access_token="access-token-123", id_token="id-token-123")

    async def verify_id_token(self, token_set: TokenSet) -> dict[str, Any]:
        if self.verify_error:
            raise self.verify_error
        return dict(self.claims)

    def logout_url(self, return_to: str) -> str:
        params = urlencode({"returnTo": return_to, "client_id": TEST_CLIENT_ID})
        return f"https://{TEST_DOMAIN}/v2/logout?{params}"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        base_url=BASE_URL,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}",
        oidc_domain=TEST_DOMAIN,
        oidc_client_id=TEST_CLIENT_ID,
        oidc_client_secret="test-client-secret",
        oidc_callback_url=f"{BASE_URL}/callback",
        basic_auth_username=BASIC_AUTH_USERNAME,
        basic_auth_hashed_password=BASIC_AUTH_HASH,
    )


@pytest.fixture
def fake_oidc() -> FakeOIDCClient:
    return FakeOIDCClient()


@pytest.fixture
def session_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest_asyncio.fixture(scope="function")
async def app(
    settings: Settings, fake_oidc: FakeOIDCClient, session_store: MemorySessionStore
) -> AsyncGenerator[FastAPI, None]:
    """Create the application with an in-memory session store and fake provider."""
    application = create_app(settings, oidc_client=fake_oidc, session_store=session_store)
    engine = application.state.context.engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield application

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(app: FastAPI) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with app.state.context.session_maker() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client speaking to the app over HTTPS."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=BASE_URL) as ac:
        yield ac


def state_from_location(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


async def perform_login(client: AsyncClient, code: str = "auth-code-123") -> None:
    """Run /login and /callback the way a browser would."""
    response = await client.get("/login")
    assert response.status_code == 307
    state = state_from_location(response.headers["location"])

    response = await client.get("/callback", params={"code": code, "state": state})
    assert response.status_code == 303, response.text
    assert response.headers["location"] == "/profile"


@pytest_asyncio.fixture
async def logged_in_client(client: AsyncClient) -> AsyncClient:
    await perform_login(client)
    return client


@pytest.fixture
def login():
    return perform_login
