"""
FoodGraph catalog backend.

Docs: https://api.foodgraph.com/api

Auth is email + password exchanged for a bearer token at /v1/auth/token.
Tokens are JWTs valid for 24h; we keep one per backend instance and
refresh it after 23h.

Search uses the fuzzy title query endpoint:
  POST /v1/catalog/products/search/query
  {"search": "...", "searchIn": {"or": ["title"]}, "fuzzyMatch": true, ...}
Results come back in FoodGraph's own relevance order; we keep that order.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import aiohttp

import config
from errors import CatalogUnavailable
from search_backends.base import CatalogBackend, CatalogProduct

logger = logging.getLogger(__name__)

# ── API constants ──────────────────────────────────────────────────────────────
AUTH_PATH   = "/v1/auth/token"
SEARCH_PATH = "/v1/catalog/products/search/query"

TOKEN_TTL_S  = 23 * 60 * 60
MAX_PAGE     = 100          # FoodGraph returns at most 100 results per query


class FoodGraphBackend(CatalogBackend):

    def __init__(
        self,
        email: str,
        password: str,
        base_url: str = config.FOODGRAPH_BASE_URL,
        timeout: float = config.CATALOG_TIMEOUT_S,
    ) -> None:
        self._email = email
        self._password = password
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._token: Optional[str] = None
        self._token_expiry: float = 0.0

    @property
    def name(self) -> str:
        return "FoodGraph"

    async def search(
        self,
        query: str,
        max_results: int = config.MAX_CANDIDATES,
        image_crop: Optional[bytes] = None,
    ) -> list[CatalogProduct]:
        """
        Fuzzy title search. FoodGraph has no image search, so image_crop is
        accepted for interface compatibility and ignored.
        """
        if image_crop:
            logger.debug("FoodGraph is text-only; ignoring %d-byte crop", len(image_crop))

        body = {
            "updatedAtFrom": config.FOODGRAPH_UPDATED_FROM,
            "productFilter": "CORE_FIELDS",
            "search":        query,
            "searchIn":      {"or": ["title"]},
            "fuzzyMatch":    True,
        }

        try:
            token = await self._authenticate()
            raw_products = await self._fetch(token, body)
        except CatalogUnavailable:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("FoodGraph request failed for '%s': %s", query, exc)
            raise CatalogUnavailable(f"FoodGraph request failed: {exc}") from exc

        logger.info("FoodGraph returned %d products for query '%s'", len(raw_products), query)

        items: list[CatalogProduct] = []
        for raw in raw_products[:min(max_results, MAX_PAGE)]:
            item = _parse_product(raw)
            if item:
                items.append(item)
        return items

    # ── HTTP helpers ──────────────────────────────────────────────────────────

    async def _authenticate(self) -> str:
        """Return a cached bearer token, fetching a new one when expired."""
        if self._token and time.monotonic() < self._token_expiry:
            return self._token

        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(
                f"{self._base_url}{AUTH_PATH}",
                json={
                    "email": self._email,
                    "password": self._password,
                    "includeRefreshToken": True,
                },
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise CatalogUnavailable(
                        f"FoodGraph authentication failed ({resp.status}): {text[:200]}"
                    )
                data = await resp.json()

        token = data.get("accessToken")
        if not token:
            raise CatalogUnavailable("FoodGraph authentication returned no accessToken")

        self._token = token
        self._token_expiry = time.monotonic() + TOKEN_TTL_S
        logger.info("FoodGraph token refreshed")
        return token

    async def _fetch(self, token: str, body: dict) -> list:
        """Single HTTP call to the search endpoint. Returns raw product list (may be empty)."""
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(
                f"{self._base_url}{SEARCH_PATH}",
                headers={"Authorization": f"Bearer {token}"},
                json=body,
            ) as resp:
                if resp.status == 401:
                    # Token revoked early; the next call re-authenticates
                    self._token = None
                if resp.status != 200:
                    text = await resp.text()
                    raise CatalogUnavailable(f"FoodGraph error {resp.status}: {text[:200]}")
                data = await resp.json()
        return data.get("results") or []


# ── Parsers ────────────────────────────────────────────────────────────────────

def front_image_url(raw: dict) -> Optional[str]:
    """FRONT image first, else the first image carrying any URL."""
    images = raw.get("images") or []

    def _url(img: dict) -> Optional[str]:
        urls = img.get("urls") or {}
        return urls.get("desktop") or urls.get("mobile") or urls.get("original")

    for img in images:
        if isinstance(img, dict) and img.get("type") == "FRONT" and _url(img):
            return _url(img)
    for img in images:
        if isinstance(img, dict) and _url(img):
            return _url(img)
    return None


def _parse_product(raw: dict) -> Optional[CatalogProduct]:
    try:
        if not raw or not isinstance(raw, dict):
            return None
        keys = raw.get("keys") or {}
        gtin = keys.get("GTIN14") or raw.get("key")
        title = (raw.get("title") or "").strip()
        if not gtin or not title:
            return None

        category = raw.get("category")
        if isinstance(category, list):
            category = category[0] if category else None

        return CatalogProduct(
            gtin=str(gtin),
            product_name=title,
            brand_name=raw.get("companyBrand") or None,
            category=category or None,
            image_url=front_image_url(raw),
        )
    except (AttributeError, TypeError, KeyError) as exc:
        logger.warning("Failed to parse FoodGraph product %s: %s", raw.get("key", "?"), exc)
        return None
