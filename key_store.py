"""
key_store.py: single source of truth for all external-service credentials.

Priority order for every key:
  1. Database (DetectionStore.set_api_key) - takes precedence
  2. Environment variable / .env file      - fallback / bootstrap

Changing a key in the DB takes effect the next time a provider or catalog
backend is built; nothing is cached here.

Key names (stored in DB as-is, env vars are the uppercase equivalent):
  google_api_key        →  GOOGLE_API_KEY
  openai_api_key        →  OPENAI_API_KEY
  anthropic_api_key     →  ANTHROPIC_API_KEY
  foodgraph_email       →  FOODGRAPH_EMAIL
  foodgraph_password    →  FOODGRAPH_PASSWORD
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from database import DetectionStore
from errors import PersistenceError

logger = logging.getLogger(__name__)

KEY_NAMES = (
    "google_api_key",
    "openai_api_key",
    "anthropic_api_key",
    "foodgraph_email",
    "foodgraph_password",
)


async def get(store: DetectionStore, key_name: str) -> Optional[str]:
    """
    Return the value for key_name, checking DB first then env.
    Returns None if not set anywhere.
    """
    try:
        db_val = await store.get_api_key(key_name)
        if db_val:
            return db_val
    except PersistenceError as exc:
        logger.warning("key_store: DB lookup failed for %s: %s", key_name, exc)

    env_val = os.getenv(key_name.upper())
    return env_val or None


async def set(store: DetectionStore, key_name: str, value: str) -> None:
    """Save a key to the DB (overrides .env for all future calls)."""
    await store.set_api_key(key_name, value)


async def delete(store: DetectionStore, key_name: str) -> None:
    """Remove a key from DB (will fall back to .env value if present)."""
    await store.delete_api_key(key_name)


async def get_all_keys(store: DetectionStore) -> dict[str, Optional[str]]:
    """Return all known keys with their current values (use mask() before logging)."""
    return {name: await get(store, name) for name in KEY_NAMES}


def mask(value: Optional[str]) -> str:
    """Return a masked version safe to write to logs."""
    if not value:
        return "not set"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
