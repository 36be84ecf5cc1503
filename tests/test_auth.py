"""Tests for the Supabase identity bridge and the login/signup/logout flows."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.auth import authenticate, create_account, get_current_user, remember_user
from core.errors import AuthError, RemoteUnavailable
from core.identity import Identity


SESSION_PAYLOAD = {
    "access_token": "jwt-abc",
    "user": {"id": "acct-9", "email": "new@example.com"},
}


@pytest.fixture
def backend_configured():
    with patch("core.config.SUPABASE_URL", "https://reef.supabase.test"), \
         patch("core.config.SUPABASE_ANON_KEY", "anon-key"):
        yield


def transport_returning(status, payload):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(status, json=payload)

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


class TestAuthenticate:
    def test_success_returns_identity_with_token(self, backend_configured):
        transport = transport_returning(200, SESSION_PAYLOAD)

        identity = asyncio.run(authenticate("new@example.com", "pw", transport))

        assert identity == Identity(id="acct-9", email="new@example.com", access_token="jwt-abc")
        request = transport.seen[0]
        assert request.url.path == "/auth/v1/token"
        assert request.url.params["grant_type"] == "password"
        assert json.loads(request.content) == {"email": "new@example.com", "password": "pw"}

    def test_bad_credentials_raise_auth_error_with_reason(self, backend_configured):
        transport = transport_returning(400, {"error_description": "Invalid login credentials"})

        with pytest.raises(AuthError, match="Invalid login credentials"):
            asyncio.run(authenticate("new@example.com", "wrong", transport))

    def test_connection_error_raises_auth_error(self, backend_configured):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(AuthError, match="Connection error"):
            asyncio.run(authenticate("a@b.c", "pw", httpx.MockTransport(handler)))

    def test_not_configured_raises(self):
        with patch("core.config.SUPABASE_URL", ""):
            with pytest.raises(AuthError, match="not configured"):
                asyncio.run(authenticate("a@b.c", "pw"))


class TestCreateAccount:
    def test_success_with_session(self, backend_configured):
        transport = transport_returning(200, SESSION_PAYLOAD)

        identity = asyncio.run(create_account("new@example.com", "secret1", transport))

        assert identity.id == "acct-9"
        assert transport.seen[0].url.path == "/auth/v1/signup"

    def test_pending_email_confirmation_is_not_an_identity(self, backend_configured):
        """Supabase returns the bare user (no session) when confirmation is required."""
        transport = transport_returning(200, {"id": "acct-9", "email": "new@example.com"})

        with pytest.raises(AuthError, match="confirm your account"):
            asyncio.run(create_account("new@example.com", "secret1", transport))

    def test_existing_user_error_uses_msg(self, backend_configured):
        transport = transport_returning(422, {"msg": "User already registered"})

        with pytest.raises(AuthError, match="User already registered"):
            asyncio.run(create_account("new@example.com", "secret1", transport))


class TestSessionIdentity:
    def test_round_trip_through_session(self):
        sess = {}
        identity = Identity(id="acct-1", email="a@b.c", access_token="t")
        remember_user(sess, identity)
        assert get_current_user(sess) == identity

    def test_empty_session_is_anonymous(self):
        assert get_current_user({}) is None
        assert get_current_user(None) is None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

class TestLoginPage:
    def test_login_redirects_when_auth_disabled(self, client, auth_disabled):
        """When auth is disabled, /login redirects to home."""
        response = client.get("/login", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/"

    def test_login_renders_when_auth_enabled(self, client, auth_enabled):
        response = client.get("/login")
        assert response.status_code == 200
        assert "Sign In" in response.text
        assert 'type="email"' in response.text
        assert 'type="password"' in response.text

    def test_signup_redirects_when_auth_disabled(self, client, auth_disabled):
        response = client.get("/signup", follow_redirects=False)
        assert response.status_code == 303

    def test_signup_has_profile_fields(self, client, auth_enabled):
        response = client.get("/signup")
        assert response.status_code == 200
        for field in ("email", "password", "name", "favorite_fish", "home_location", "bio"):
            assert f'name="{field}"' in response.text


class TestLoginFlow:
    def test_failed_login_keeps_guest_sightings(self, client, auth_enabled, fake_gateway):
        client.post("/unlocks/A/toggle")
        with patch("app.main.authenticate", new=AsyncMock(side_effect=AuthError("Invalid login credentials"))):
            response = client.post("/login", data={"email": "a@b.c", "password": "x"})

        assert "Invalid login credentials" in response.text
        home = client.get("/")
        assert 'data-unlocked="true"' in home.text
        assert fake_gateway.calls == []

    def test_login_merges_guest_sightings(self, client, auth_enabled, login_as, fake_gateway):
        """Guest {A, C} + account {C, D} -> account {A, C, D} with a single add."""
        fake_gateway.rows = {("acct-1", "C"), ("acct-1", "D")}
        client.post("/unlocks/A/toggle")
        client.post("/unlocks/C/toggle")

        response = client.post("/login", data={"email": "diver@example.com", "password": "pw"},
                               follow_redirects=False)

        assert response.status_code == 303
        assert fake_gateway.remote("acct-1") == {"A", "C", "D"}
        assert fake_gateway.writes() == [("add", "A")]

    def test_login_when_sightings_cannot_load_stays_guest(self, client, auth_enabled, login_as, fake_gateway):
        fake_gateway.fail_list = True
        client.post("/unlocks/A/toggle")

        response = client.post("/login", data={"email": "diver@example.com", "password": "pw"})

        assert "could not be loaded" in response.text
        fake_gateway.fail_list = False
        # Still a guest: the next toggle does not reach the backend
        client.post("/unlocks/B/toggle")
        assert fake_gateway.writes() == []

    def test_partial_merge_signs_in_and_flashes_warning(self, client, auth_enabled, login_as, fake_gateway):
        fake_gateway.fail.add(("add", "B"))
        client.post("/unlocks/A/toggle")
        client.post("/unlocks/B/toggle")

        client.post("/login", data={"email": "diver@example.com", "password": "pw"},
                    follow_redirects=False)
        home = client.get("/")

        assert fake_gateway.remote("acct-1") == {"A"}
        assert "could not be saved to your account" in home.text
        assert 'id="merge-residue"' in home.text
        assert "Retry" in home.text


class TestSignupFlow:
    def test_signup_merges_and_saves_profile(self, client, auth_enabled, identity, fake_gateway):
        client.post("/unlocks/E/toggle")
        upsert = AsyncMock(return_value={})
        with patch("app.main.create_account", new=AsyncMock(return_value=identity)), \
             patch("app.main.upsert_profile", new=upsert):
            response = client.post("/signup", data={
                "email": "diver@example.com", "password": "secret1",
                "name": "Marlin", "favorite_fish": "Clownfish", "home_location": "Cairns", "bio": "",
            }, follow_redirects=False)

        assert response.status_code == 303
        assert fake_gateway.remote("acct-1") == {"E"}
        profile = upsert.await_args.args[1]
        assert profile.name == "Marlin"
        assert profile.location == "Cairns"

    def test_signup_profile_failure_still_signs_in(self, client, auth_enabled, identity, fake_gateway):
        with patch("app.main.create_account", new=AsyncMock(return_value=identity)), \
             patch("app.main.upsert_profile", new=AsyncMock(side_effect=RemoteUnavailable("upsert_profile"))):
            response = client.post("/signup", data={"email": "diver@example.com", "password": "secret1"},
                                   follow_redirects=False)

        assert response.status_code == 303
        home = client.get("/")
        assert "profile details could not be saved" in home.text
        assert "Sign out" in home.text

    def test_signup_pending_confirmation_keeps_guest(self, client, auth_enabled, fake_gateway):
        client.post("/unlocks/A/toggle")
        pending = AuthError("Check your email to confirm your account, then sign in.")
        with patch("app.main.create_account", new=AsyncMock(side_effect=pending)):
            response = client.post("/signup", data={"email": "diver@example.com", "password": "secret1"})

        assert "confirm your account" in response.text
        assert fake_gateway.calls == []
        assert 'data-unlocked="true"' in client.get("/").text


class TestLogout:
    def test_logout_redirects_to_home(self, client, auth_enabled):
        response = client.get("/logout", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/"

    def test_logout_starts_empty_guest_set(self, client, auth_enabled, login_as, fake_gateway):
        client.post("/login", data={"email": "diver@example.com", "password": "pw"})
        client.post("/unlocks/A/toggle")

        client.get("/logout")
        home = client.get("/")

        assert 'data-unlocked="true"' not in home.text
        assert fake_gateway.remote("acct-1") == {"A"}
