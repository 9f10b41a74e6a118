"""
catalog.py: public interface for catalog candidate matching.

The rest of the service imports only from here:
  from catalog import build_backend, find_candidates

Only FoodGraph is wired in today; any CatalogBackend can be passed to
find_candidates() directly (tests pass fakes).
"""
from __future__ import annotations

import logging
from typing import Optional

import config
import key_store
from database import DetectionStore
from errors import CatalogUnavailable, InvalidInput
from search_backends.base import CatalogBackend, CatalogProduct

logger = logging.getLogger(__name__)

__all__ = ["CatalogProduct", "build_backend", "build_search_term", "find_candidates"]


async def build_backend(store: DetectionStore) -> CatalogBackend:
    """
    Build the catalog backend using credentials from key_store (DB → .env).
    Raises CatalogUnavailable when they are missing.
    """
    email    = await key_store.get(store, "foodgraph_email")
    password = await key_store.get(store, "foodgraph_password")
    if not (email and password):
        raise CatalogUnavailable(
            "FoodGraph credentials not configured "
            "(set FOODGRAPH_EMAIL and FOODGRAPH_PASSWORD or store them in api_keys)"
        )

    from search_backends.foodgraph_backend import FoodGraphBackend
    backend = FoodGraphBackend(email=email, password=password)
    logger.info("Catalog backend: %s", backend.name)
    return backend


def build_search_term(
    label: str,
    search_term: Optional[str] = None,
    brand: Optional[str] = None,
    product_name: Optional[str] = None,
    flavor: Optional[str] = None,
    size: Optional[str] = None,
) -> str:
    """
    Pick the catalog query for a detection.

    Any of brand / product_name / flavor / size given → those parts joined in
    that order. Otherwise an explicit search_term, otherwise the label.
    """
    parts = [p.strip() for p in (brand, product_name, flavor, size) if p and p.strip()]
    if parts:
        return " ".join(parts)
    if search_term and search_term.strip():
        return search_term.strip()
    return label


async def find_candidates(
    backend: CatalogBackend,
    label: str,
    image_crop: Optional[bytes] = None,
    max_results: int = config.MAX_CANDIDATES,
) -> list[CatalogProduct]:
    """
    Look up catalog candidates for one detection label.

    Order is the catalog's own relevance ranking, with no re-ranking or
    de-duplication here. Returns [] when the catalog has no match.
    Raises InvalidInput for a blank label, CatalogUnavailable on
    transport/auth errors.
    """
    query = (label or "").strip()
    if not query:
        raise InvalidInput("Detection label is empty; nothing to search for")

    try:
        products = await backend.search(query, max_results, image_crop=image_crop)
    except CatalogUnavailable:
        raise
    except Exception as exc:
        logger.error("[%s] Search failed for '%s': %s", backend.name, query, exc)
        raise CatalogUnavailable(f"[{backend.name}] {exc}") from exc

    logger.info("[%s] '%s' → %d candidates", backend.name, query, len(products))
    return products[:max_results]
