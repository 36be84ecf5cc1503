#!/usr/bin/env python3
"""
Seed the backend species table from a local catalog file.

Validates data/species.json (or --catalog) with the same rules the app uses
at startup, then upserts every row into the species table keyed by id.

Usage:
    python scripts/seed_catalog.py --dry-run   # Validate and preview
    python scripts/seed_catalog.py             # Upsert to the backend

Requires SUPABASE_URL plus a key allowed to write the species table
(SUPABASE_SERVICE_KEY, falling back to SUPABASE_ANON_KEY).
"""

import argparse
import os
import sys
from collections import Counter
from dataclasses import asdict
from pathlib import Path

import httpx

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from core import config
from core.catalog import SpeciesCatalog
from core.errors import CatalogError
from core.remote_gateway import rest_headers, rest_url

DEFAULT_CATALOG_PATH = project_root / "data" / "species.json"


def catalog_rows(catalog: SpeciesCatalog) -> list[dict]:
    """Rows in the species table shape; blank optional fields become null."""
    rows = []
    for record in catalog:
        row = {k: (v or None) for k, v in asdict(record).items()}
        row["id"] = int(record.id) if record.id.isdigit() else record.id
        rows.append(row)
    return rows


def seed_catalog(
    catalog_path: Path,
    dry_run: bool = False,
    service_key: str = None,
    transport: httpx.BaseTransport = None,
) -> dict:
    """
    Validate a catalog file and upsert it into the species table.

    Args:
        catalog_path: Path to the species JSON file
        dry_run: If True, validate and print without contacting the backend
        service_key: Key used for the write (defaults to the anon key)
        transport: Optional httpx transport (tests pass httpx.MockTransport)

    Returns:
        Summary dict with counts
    """
    catalog = SpeciesCatalog.from_json(catalog_path)
    rows = catalog_rows(catalog)
    by_location = Counter(r["location"] or "untagged" for r in rows)
    print(f"Validated {len(rows)} species from {catalog_path}")

    if dry_run:
        for row in rows[:10]:
            print(f"[DRY-RUN] Would upsert: {row['id']} {row['name']} ({row['location'] or '-'})")
        if len(rows) > 10:
            print(f"[DRY-RUN] ... and {len(rows) - 10} more")
    elif rows:
        if not config.SUPABASE_URL:
            raise CatalogError("SUPABASE_URL is not set; cannot seed the backend")
        key = service_key or config.SUPABASE_ANON_KEY
        headers = rest_headers(key, Prefer="resolution=merge-duplicates,return=minimal")
        headers["apikey"] = key
        with httpx.Client(transport=transport, timeout=config.REQUEST_TIMEOUT) as client:
            response = client.post(
                rest_url(config.SPECIES_TABLE),
                params={"on_conflict": "id"},
                json=rows,
                headers=headers,
            )
        if response.is_error:
            raise CatalogError(
                f"Species upsert failed with HTTP {response.status_code}: {response.text[:200]}"
            )
        print(f"Upserted {len(rows)} species into '{config.SPECIES_TABLE}'")

    return {
        "species": len(rows),
        "by_location": dict(by_location),
        "dry_run": dry_run,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Validate the local species catalog and seed the backend species table",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--catalog",
        type=Path,
        default=DEFAULT_CATALOG_PATH,
        help=f"Path to species JSON (default: {DEFAULT_CATALOG_PATH})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and preview without writing to the backend",
    )
    args = parser.parse_args()

    try:
        summary = seed_catalog(
            catalog_path=args.catalog,
            dry_run=args.dry_run,
            service_key=os.getenv("SUPABASE_SERVICE_KEY"),
        )
    except CatalogError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except httpx.HTTPError as e:
        print(f"ERROR: Could not reach backend: {e}", file=sys.stderr)
        sys.exit(1)

    print("\n" + "=" * 50)
    print("SUMMARY")
    print("=" * 50)
    print(f"Mode:     {'DRY-RUN' if summary['dry_run'] else 'WRITE'}")
    print(f"Species:  {summary['species']}")
    for location, count in sorted(summary["by_location"].items()):
        print(f"  {location:<9} {count}")

    if summary["dry_run"]:
        print("\nNothing was written. Run without --dry-run to seed the backend.")


if __name__ == "__main__":
    main()
