"""
Identity bridge to Supabase Auth.

Permission levels:
- Guest: can browse and mark species as spotted (kept for the session only)
- Signed in: spotted species are saved to the account

When SUPABASE_URL is not set, auth is disabled and every visitor is a guest.

authenticate() and create_account() return an Identity or raise AuthError;
the session only ever holds what Identity.to_session() produces.
"""

import httpx

from core import config
from core.errors import AuthError
from core.identity import Identity

SESSION_KEY = "auth"


def is_auth_enabled() -> bool:
    """Check if authentication is configured."""
    return config.is_backend_configured()


def get_current_user(session: dict) -> Identity | None:
    """Get the current identity from session, or None if not logged in."""
    user_data = session.get(SESSION_KEY) if session else None
    return Identity.from_session(user_data) if user_data else None


def remember_user(session: dict, identity: Identity) -> None:
    session[SESSION_KEY] = identity.to_session()


def _auth_headers() -> dict:
    return {
        "apikey": config.SUPABASE_ANON_KEY,
        "Content-Type": "application/json",
    }


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        error_data = response.json()
    except ValueError:
        return default
    return (
        error_data.get("error_description")
        or error_data.get("msg")
        or error_data.get("message")
        or default
    )


def _identity_from_session_payload(data: dict) -> Identity | None:
    """Build an Identity from a Supabase session payload, or None if there is no session."""
    access_token = data.get("access_token")
    user = data.get("user") or {}
    if not access_token or not user.get("id"):
        return None
    return Identity(id=user["id"], email=user.get("email"), access_token=access_token)


async def _post(path: str, payload: dict, transport: httpx.AsyncBaseTransport = None) -> httpx.Response:
    if not is_auth_enabled():
        raise AuthError("Authentication not configured")
    try:
        async with httpx.AsyncClient(transport=transport, timeout=config.REQUEST_TIMEOUT) as client:
            return await client.post(
                f"{config.SUPABASE_URL}{path}",
                json=payload,
                headers=_auth_headers(),
            )
    except httpx.HTTPError as e:
        raise AuthError(f"Connection error: {e}") from e


async def authenticate(email: str, password: str, transport: httpx.AsyncBaseTransport = None) -> Identity:
    """Sign in with email and password."""
    response = await _post(
        "/auth/v1/token?grant_type=password",
        {"email": email, "password": password},
        transport,
    )
    if response.status_code != 200:
        raise AuthError(_error_message(response, "Login failed"))

    identity = _identity_from_session_payload(response.json())
    if identity is None:
        raise AuthError("Login failed")
    return identity


async def create_account(email: str, password: str, transport: httpx.AsyncBaseTransport = None) -> Identity:
    """
    Create an account and sign it in.

    When the project requires email confirmation Supabase returns the new
    user without a session; that is reported as an AuthError so the caller
    stays a guest until the user confirms and signs in.
    """
    response = await _post("/auth/v1/signup", {"email": email, "password": password}, transport)
    if response.status_code != 200:
        raise AuthError(_error_message(response, "Signup failed"))

    identity = _identity_from_session_payload(response.json())
    if identity is None:
        raise AuthError("Check your email to confirm your account, then sign in.")
    return identity
