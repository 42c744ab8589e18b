import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from portal.api.auth import csrf_token
from portal.errors import OIDCError
from portal.models.user import User

COOKIE_NAME = "session_ux762yqp"


def query_params(location: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlparse(location).query).items()}


class TestCSRFToken:
    """Tests for OAuth state token generation."""

    def test_token_is_44_characters(self):
        """Test that 32 random bytes encode to a 44 character token."""
        token = csrf_token()
        assert len(token) == 44
        assert len(base64.b64decode(token)) == 32

    def test_tokens_are_unique(self):
        """Test that consecutive tokens differ."""
        assert len({csrf_token() for _ in range(50)}) == 50


class TestLogin:
    """Tests for the login redirect."""

    @pytest.mark.asyncio
    async def test_login_redirects_to_provider(self, client: AsyncClient, session_store):
        """Test that login stores the state in the session and sends it to the provider."""
        response = await client.get("/login")
        assert response.status_code == 307

        location = response.headers["location"]
        assert location.startswith("https://test-tenant.example.com/authorize?")
        params = query_params(location)
        assert params["client_id"] == "test-client-id"
        assert len(params["state"]) == 44

        token = client.cookies.get(COOKIE_NAME)
        assert token
        record = await session_store.find(token)
        assert record is not None
        assert record.data["oauth_state"] == params["state"]
        assert record.data["profile"] is None

    @pytest.mark.asyncio
    async def test_login_sets_secure_cookie(self, client: AsyncClient):
        """Test that the session cookie is Secure and HttpOnly."""
        response = await client.get("/login")
        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith(f"{COOKIE_NAME}=")
        assert "secure" in cookie
        assert "httponly" in cookie

    @pytest.mark.asyncio
    async def test_each_login_issues_new_state(self, client: AsyncClient):
        """Test that a second login replaces the pending state."""
        first = query_params((await client.get("/login")).headers["location"])["state"]
        second = query_params((await client.get("/login")).headers["location"])["state"]
        assert first != second


class TestCallback:
    """Tests for the authorization-code callback."""

    @pytest.mark.asyncio
    async def test_callback_authenticates(
        self, client: AsyncClient, session_store, db_session, fake_oidc, login
    ):
        """Test that a matching state logs the user in and creates the user."""
        await login(client, code="code-xyz")
        assert fake_oidc.exchanged_codes == ["code-xyz"]

        record = await session_store.find(client.cookies.get(COOKIE_NAME))
        assert record is not None
        assert record.data["oauth_state"] is None
        assert record.data["access_token"] == "access-token-123"
        assert record.data["profile"]["subject"] == "auth0|abc123"
        assert record.data["profile"]["email"] == "test@example.com"

        user = (
            await db_session.execute(select(User).where(User.subject == "auth0|abc123"))
        ).scalar_one()
        assert record.data["user_id"] == str(user.id)
        assert user.name == "Test User"

        response = await client.get("/profile")
        assert response.status_code == 200
        assert "Test User" in response.text

    @pytest.mark.asyncio
    async def test_callback_renews_session_token(self, client: AsyncClient, session_store, login):
        """Test that logging in moves the session to a new token."""
        await client.get("/login")
        pre_login_token = client.cookies.get(COOKIE_NAME)

        await login(client)
        post_login_token = client.cookies.get(COOKIE_NAME)

        assert post_login_token != pre_login_token
        assert await session_store.find(pre_login_token) is None

    @pytest.mark.asyncio
    async def test_state_mismatch_is_rejected(self, client: AsyncClient, session_store, fake_oidc):
        """Test that a forged state is a client error and authenticates nobody."""
        await client.get("/login")
        token = client.cookies.get(COOKIE_NAME)

        response = await client.get("/callback", params={"code": "abc", "state": "forged"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid state parameter"
        assert fake_oidc.exchanged_codes == []

        record = await session_store.find(token)
        assert record.data["oauth_state"] is not None
        assert record.data["profile"] is None

        response = await client.get("/profile")
        assert response.status_code == 303
        assert response.headers["location"] == "/login"

    @pytest.mark.asyncio
    async def test_callback_without_login_is_rejected(self, client: AsyncClient, fake_oidc):
        """Test that an empty state never matches a session without one."""
        response = await client.get("/callback", params={"code": "abc", "state": ""})
        assert response.status_code == 400
        assert fake_oidc.exchanged_codes == []

    @pytest.mark.asyncio
    async def test_callback_missing_code(self, client: AsyncClient):
        """Test that a callback without a code is a client error."""
        state = query_params((await client.get("/login")).headers["location"])["state"]
        response = await client.get("/callback", params={"state": state})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_exchange_failure_is_server_error(
        self, client: AsyncClient, fake_oidc, db_session
    ):
        """Test that a failed code exchange is a 500 and leaves the user anonymous."""
        fake_oidc.exchange_error = OIDCError("Token exchange failed with status 401")
        state = query_params((await client.get("/login")).headers["location"])["state"]

        response = await client.get("/callback", params={"code": "abc", "state": state})
        assert response.status_code == 500
        assert "unexpected error" in response.text

        response = await client.get("/profile")
        assert response.status_code == 303
        count = (await db_session.execute(select(func.count()).select_from(User))).scalar_one()
        assert count == 0

    @pytest.mark.asyncio
    async def test_verification_failure_is_server_error(self, client: AsyncClient, fake_oidc):
        """Test that an ID token that fails verification is a 500."""
        fake_oidc.verify_error = OIDCError("Invalid OIDC token: Signature verification failed.")
        state = query_params((await client.get("/login")).headers["location"])["state"]

        response = await client.get("/callback", params={"code": "abc", "state": state})
        assert response.status_code == 500

        response = await client.get("/profile")
        assert response.status_code == 303

    @pytest.mark.asyncio
    async def test_empty_subject_is_server_error(
        self, client: AsyncClient, fake_oidc, session_store, db_session
    ):
        """Test that a verified token without a subject never authenticates."""
        fake_oidc.claims["sub"] = ""
        state = query_params((await client.get("/login")).headers["location"])["state"]
        token = client.cookies.get(COOKIE_NAME)

        response = await client.get("/callback", params={"code": "abc", "state": state})
        assert response.status_code == 500

        record = await session_store.find(token)
        assert record.data["profile"] is None
        assert record.data["user_id"] is None
        count = (await db_session.execute(select(func.count()).select_from(User))).scalar_one()
        assert count == 0

        response = await client.get("/profile")
        assert response.status_code == 303

    @pytest.mark.asyncio
    async def test_repeat_login_keeps_user(
        self, client: AsyncClient, fake_oidc, session_store, db_session, login
    ):
        """Test that logging in twice updates the same user record."""
        await login(client)
        first = await session_store.find(client.cookies.get(COOKIE_NAME))

        fake_oidc.claims["email"] = "changed@example.com"
        await login(client)
        second = await session_store.find(client.cookies.get(COOKIE_NAME))

        assert first.data["user_id"] == second.data["user_id"]
        users = (await db_session.execute(select(User))).scalars().all()
        assert len(users) == 1
        assert users[0].email == "changed@example.com"


class TestLogout:
    """Tests for logout."""

    @pytest.mark.asyncio
    async def test_logout_redirects_to_provider(self, logged_in_client: AsyncClient):
        """Test that logout sends the user to the provider logout endpoint."""
        response = await logged_in_client.get("/logout")
        assert response.status_code == 303

        location = response.headers["location"]
        assert location.startswith("https://test-tenant.example.com/v2/logout?")
        params = query_params(location)
        assert params["returnTo"] == "https://test"
        assert params["client_id"] == "test-client-id"

    @pytest.mark.asyncio
    async def test_old_cookie_is_anonymous_after_logout(
        self, logged_in_client: AsyncClient, session_store
    ):
        """Test that a session cookie stops working once logged out."""
        old_token = logged_in_client.cookies.get(COOKIE_NAME)

        response = await logged_in_client.get("/logout")
        assert "max-age=0" in response.headers["set-cookie"].lower()
        assert await session_store.find(old_token) is None

        response = await logged_in_client.get(
            "/profile", headers={"Cookie": f"{COOKIE_NAME}={old_token}"}
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/login"


class TestProtectedRoutes:
    """Tests for the session gate on protected routes."""

    @pytest.mark.asyncio
    async def test_no_cookie_redirects_to_login(self, client: AsyncClient):
        """Test that a request without a cookie is redirected, not rejected."""
        response = await client.get("/profile")
        assert response.status_code == 303
        assert response.headers["location"] == "/login"

    @pytest.mark.asyncio
    async def test_unknown_cookie_redirects_to_login(self, client: AsyncClient):
        """Test that a token the store does not know is anonymous."""
        response = await client.get("/profile", headers={"Cookie": f"{COOKIE_NAME}=bogus"})
        assert response.status_code == 303
        assert response.headers["location"] == "/login"

    @pytest.mark.asyncio
    async def test_pending_login_is_not_authenticated(self, client: AsyncClient):
        """Test that a session holding only an OAuth state is still anonymous."""
        await client.get("/login")
        response = await client.get("/profile")
        assert response.status_code == 303

    @pytest.mark.asyncio
    async def test_authenticated_request_succeeds(self, logged_in_client: AsyncClient):
        """Test that a logged in session reaches the profile page."""
        response = await logged_in_client.get("/profile")
        assert response.status_code == 200
        assert "test@example.com" in response.text
        assert "auth0|abc123" in response.text
        assert "Member since" in response.text

    @pytest.mark.asyncio
    async def test_profile_without_subject_is_not_authenticated(
        self, client: AsyncClient, session_store
    ):
        """Test that a stored profile with an empty subject does not pass the gate."""
        expiry = datetime.now(timezone.utc) + timedelta(hours=1)
        await session_store.commit(
            "no-subject-token", {"profile": {"subject": "", "email": "x@example.com"}}, expiry
        )

        response = await client.get(
            "/profile", headers={"Cookie": f"{COOKIE_NAME}=no-subject-token"}
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/login"
