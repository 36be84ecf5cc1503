"""
Configuration for Reefdex.

Contains:
- Server configuration (environment-based)
- Backend (Supabase) connection settings
- Catalog and reconciliation tuning

All values are read from environment variables with sensible defaults.
When SUPABASE_URL / SUPABASE_ANON_KEY are unset, auth is disabled, every
visitor stays a guest, and the catalog is read from CATALOG_PATH.
"""

import os

# =============================================================================
# Server Configuration (from environment variables)
# =============================================================================

# Network binding
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "5001"))

# Debug mode (enables hot reload, verbose logging)
DEBUG = os.getenv("DEBUG", "true").lower() == "true"

SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-in-production")

# Append-only event log (events.jsonl) and run id live here
LOG_DIR = os.getenv("LOG_DIR", "logs")
DATA_DIR = os.getenv("DATA_DIR", "data")

# =============================================================================
# Backend (Supabase)
# =============================================================================

SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")

# Seconds before a backend call is abandoned and reported as unavailable
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "10"))

# Table names in the managed backend
SPECIES_TABLE = "species"
SIGHTINGS_TABLE = "sightings"
PROFILES_TABLE = "users"

# Public bucket holding the five default profile pictures (1.jpg .. 5.jpg)
PROFILE_IMAGE_BASE_URL = os.getenv(
    "PROFILE_IMAGE_BASE_URL",
    f"{SUPABASE_URL}/storage/v1/object/public/species-images" if SUPABASE_URL else "",
).rstrip("/")
PROFILE_IMAGE_COUNT = 5

# =============================================================================
# Catalog & Reconciliation
# =============================================================================

# Local species list used when the backend is not configured
CATALOG_PATH = os.getenv("CATALOG_PATH", os.path.join(DATA_DIR, "species.json"))

# Upper bound on concurrent add calls while merging a guest set
MERGE_CONCURRENCY = max(1, int(os.getenv("MERGE_CONCURRENCY", "8")))


def is_backend_configured() -> bool:
    """Check if the Supabase backend is configured."""
    return bool(SUPABASE_URL and SUPABASE_ANON_KEY)
