"""
Remote unlock persistence over the Supabase REST API (PostgREST).

Each unlock is one row in the sightings table keyed by (user_id, species_id).
Membership operations are made idempotent at the HTTP level:
- add    -> upsert with ON CONFLICT DO NOTHING (existing pair is success)
- remove -> filtered DELETE (absent pair is success)

Every transport error or non-2xx response is raised as RemoteUnavailable.
Callers must treat the operation as not applied.
"""

import logging

import httpx

from core import config
from core.errors import RemoteUnavailable
from core.identity import Identity

logger = logging.getLogger(__name__)


def rest_url(table: str) -> str:
    """PostgREST endpoint for a table."""
    return f"{config.SUPABASE_URL}/rest/v1/{table}"


def rest_headers(access_token: str | None = None, **extra) -> dict:
    """Headers for a PostgREST call, authorised as the user when a token is given."""
    headers = {
        "apikey": config.SUPABASE_ANON_KEY,
        "Authorization": f"Bearer {access_token or config.SUPABASE_ANON_KEY}",
        "Content-Type": "application/json",
    }
    headers.update(extra)
    return headers


class RemoteUnlockGateway:
    """
    Set-membership view over the sightings table.

    Args:
        transport: Optional httpx transport (tests pass httpx.MockTransport)
        timeout: Seconds per request, defaults to REQUEST_TIMEOUT
    """

    def __init__(self, transport: httpx.AsyncBaseTransport = None, timeout: float = None):
        self._transport = transport
        self._timeout = config.REQUEST_TIMEOUT if timeout is None else timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def _send(self, operation: str, method: str, identity: Identity,
                    species_id: str = None, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, rest_url(config.SIGHTINGS_TABLE), **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{operation} user={identity.id} species={species_id}: {e!r}")
            raise RemoteUnavailable(operation, species_id, detail=str(e)) from e

        if response.is_error:
            logger.warning(
                f"{operation} user={identity.id} species={species_id}: HTTP {response.status_code}"
            )
            raise RemoteUnavailable(
                operation, species_id, status_code=response.status_code, detail=response.text[:200]
            )
        return response

    async def list_remote_unlocks(self, identity: Identity) -> set[str]:
        """Current membership for the account."""
        response = await self._send(
            "list_remote_unlocks", "GET", identity,
            params={"select": "species_id", "user_id": f"eq.{identity.id}"},
            headers=rest_headers(identity.access_token),
        )
        try:
            rows = response.json()
        except ValueError as e:
            raise RemoteUnavailable("list_remote_unlocks", detail="malformed response") from e
        return {str(row["species_id"]) for row in rows if row.get("species_id") is not None}

    async def add_remote_unlock(self, identity: Identity, species_id: str) -> None:
        """Insert the (account, species) pair if absent."""
        await self._send(
            "add_remote_unlock", "POST", identity, species_id,
            params={"on_conflict": "user_id,species_id"},
            json={"user_id": identity.id, "species_id": species_id},
            headers=rest_headers(
                identity.access_token,
                Prefer="resolution=ignore-duplicates,return=minimal",
            ),
        )
        logger.info(f"Remote unlock added: user={identity.id} species={species_id}")

    async def remove_remote_unlock(self, identity: Identity, species_id: str) -> None:
        """Delete the (account, species) pair if present."""
        await self._send(
            "remove_remote_unlock", "DELETE", identity, species_id,
            params={"user_id": f"eq.{identity.id}", "species_id": f"eq.{species_id}"},
            headers=rest_headers(identity.access_token, Prefer="return=minimal"),
        )
        logger.info(f"Remote unlock removed: user={identity.id} species={species_id}")
