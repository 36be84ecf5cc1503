"""Optional profile row written at signup (users table, keyed by account id)."""

import logging
import random
from dataclasses import asdict, dataclass

import httpx

from core import config
from core.errors import RemoteUnavailable
from core.identity import Identity
from core.remote_gateway import rest_headers, rest_url

logger = logging.getLogger(__name__)


@dataclass
class Profile:
    name: str = ""
    favorite_fish: str = ""
    location: str = ""
    bio: str = ""
    profile_image: str = ""


def default_profile_image() -> str:
    """One of the bundled profile pictures, chosen at random."""
    if not config.PROFILE_IMAGE_BASE_URL:
        return ""
    n = random.randint(1, config.PROFILE_IMAGE_COUNT)
    return f"{config.PROFILE_IMAGE_BASE_URL}/{n}.jpg"


async def upsert_profile(identity: Identity, profile: Profile,
                         transport: httpx.AsyncBaseTransport = None) -> dict:
    """Create or replace the profile row for an account. Returns the row sent."""
    row = {"id": identity.id, "email": identity.email or None}
    row.update({k: (v or None) for k, v in asdict(profile).items()})
    if not row["profile_image"]:
        row["profile_image"] = default_profile_image() or None

    try:
        async with httpx.AsyncClient(transport=transport, timeout=config.REQUEST_TIMEOUT) as client:
            response = await client.post(
                rest_url(config.PROFILES_TABLE),
                params={"on_conflict": "id"},
                json=row,
                headers=rest_headers(
                    identity.access_token,
                    Prefer="resolution=merge-duplicates,return=minimal",
                ),
            )
    except httpx.HTTPError as e:
        raise RemoteUnavailable("upsert_profile", detail=str(e)) from e

    if response.is_error:
        raise RemoteUnavailable("upsert_profile", status_code=response.status_code,
                                detail=response.text[:200])
    logger.info(f"Profile saved for user={identity.id}")
    return row
