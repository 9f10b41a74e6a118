"""
Abstract base for all product catalog backends.
Every backend must return the same CatalogProduct list; the pipeline
doesn't care which catalog is active.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CatalogProduct:
    """One catalog record as returned by a backend, before it is stored."""
    gtin: str
    product_name: str
    brand_name: Optional[str]
    category: Optional[str]
    image_url: Optional[str]    # front-of-pack image


class CatalogBackend(ABC):
    """All backends must implement this interface."""

    @abstractmethod
    async def search(
        self,
        query: str,
        max_results: int,
        image_crop: Optional[bytes] = None,
    ) -> list[CatalogProduct]:
        """
        Search the catalog for products matching `query`.
        Returns up to max_results CatalogProduct objects in the catalog's own
        relevance order, or [] when nothing matches.
        Transport / auth failures must raise CatalogUnavailable.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name for logs/display."""
        ...
