"""
Species catalog.

The catalog is read once per process and never mutated afterwards.

Supports two sources:
- Backend mode: the species table via the Supabase REST API
- Local mode (default without Supabase): a JSON list at CATALOG_PATH

Both sources produce the same row shape:
    {"id": 1, "name": "...", "scientific_name": "...",
     "image_url": "...", "location": "GBR" | "GSR" | null}
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from core import config
from core.errors import CatalogError
from core.remote_gateway import rest_headers, rest_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeciesRecord:
    id: str
    name: str
    scientific_name: str = ""
    image_url: str = ""
    location: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "SpeciesRecord":
        if row.get("id") is None or not row.get("name"):
            raise CatalogError(f"Species row missing required 'id' or 'name': {row!r}")
        location = (row.get("location") or "").strip() or None
        return cls(
            id=str(row["id"]),
            name=row["name"],
            scientific_name=row.get("scientific_name") or "",
            image_url=row.get("image_url") or "",
            location=location.upper() if location else None,
        )


class SpeciesCatalog:
    """Immutable, id-indexed list of species records."""

    def __init__(self, records: list[SpeciesRecord] = None):
        self._records: tuple[SpeciesRecord, ...] = tuple(records or ())
        self._by_id = {r.id: r for r in self._records}
        if len(self._by_id) != len(self._records):
            raise CatalogError("Duplicate species id in catalog")

    @classmethod
    def from_rows(cls, rows: list[dict]) -> "SpeciesCatalog":
        return cls([SpeciesRecord.from_row(row) for row in rows])

    @classmethod
    def from_json(cls, path: Path) -> "SpeciesCatalog":
        """Load catalog from a local JSON file (list of rows, or {"species": [...]})."""
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CatalogError(f"Catalog file {path} is corrupted: {e}") from e
        except OSError as e:
            raise CatalogError(f"Catalog file {path} could not be read: {e}") from e

        if isinstance(data, dict):
            data = data.get("species", [])
        if not isinstance(data, list):
            raise CatalogError(f"Catalog file {path} must contain a list of species")
        return cls.from_rows(data)

    def get(self, species_id: str) -> SpeciesRecord | None:
        return self._by_id.get(str(species_id))

    def ids(self) -> frozenset[str]:
        return frozenset(self._by_id)

    def __contains__(self, species_id) -> bool:
        return str(species_id) in self._by_id

    def __iter__(self):
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)


async def fetch_species_rows(transport: httpx.AsyncBaseTransport = None) -> list[dict]:
    """Single full read of the species table."""
    try:
        async with httpx.AsyncClient(transport=transport, timeout=config.REQUEST_TIMEOUT) as client:
            response = await client.get(
                rest_url(config.SPECIES_TABLE),
                params={"select": "*"},
                headers=rest_headers(),
            )
    except httpx.HTTPError as e:
        raise CatalogError(f"Could not reach species table: {e}") from e

    if response.is_error:
        raise CatalogError(f"Species table returned HTTP {response.status_code}")
    return response.json()


async def load_catalog(transport: httpx.AsyncBaseTransport = None) -> SpeciesCatalog:
    """Load the catalog from the backend when configured, else from CATALOG_PATH."""
    if config.is_backend_configured():
        catalog = SpeciesCatalog.from_rows(await fetch_species_rows(transport))
        source = "backend"
    elif Path(config.CATALOG_PATH).exists():
        catalog = SpeciesCatalog.from_json(config.CATALOG_PATH)
        source = config.CATALOG_PATH
    else:
        logger.warning(f"No backend configured and {config.CATALOG_PATH} not found; catalog is empty")
        catalog = SpeciesCatalog()
        source = "empty"
    logger.info(f"Catalog loaded: {len(catalog)} species from {source}")
    return catalog
