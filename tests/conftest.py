"""
Shared pytest fixtures.

Every test that touches the database gets a fresh DetectionStore in a
temporary directory so tests are fully isolated from each other and from
the real data/detections.db.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from database import DetectionStore                         # noqa: E402
from providers.base import RawDetectionResponse, VisionProvider   # noqa: E402
from search_backends.base import CatalogBackend, CatalogProduct   # noqa: E402


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """Redirect DATA_DIR to a fresh tmp directory for every test."""
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))
    import config
    monkeypatch.setattr(config, "DATA_DIR", str(data))
    yield data


@pytest_asyncio.fixture
async def store(tmp_data_dir) -> DetectionStore:
    s = DetectionStore(str(tmp_data_dir / "detections.db"))
    await s.init_db()
    return s


class FakeProvider(VisionProvider):
    """Returns canned model text; records what it was sent."""

    def __init__(self, text: str = "[]", exc: Exception | None = None, delay: float = 0.0):
        self.name = "fake"
        self.model_id = "vision-1"
        self.text = text
        self.exc = exc
        self.delay = delay
        self.calls: list[tuple[bytes, str]] = []

    async def detect_raw(self, image_bytes: bytes, mime_type: str) -> RawDetectionResponse:
        self.calls.append((image_bytes, mime_type))
        if self.delay:
            import asyncio
            await asyncio.sleep(self.delay)
        if self.exc:
            raise self.exc
        return RawDetectionResponse(
            provider_name=self.full_name, text=self.text,
            latency_ms=5, input_tokens=100, output_tokens=20,
        )


class FakeBackend(CatalogBackend):
    """Returns canned catalog products in the given order."""

    def __init__(self, products: list[CatalogProduct] | None = None, exc: Exception | None = None):
        self.products = products or []
        self.exc = exc
        self.queries: list[tuple[str, int, bytes | None]] = []

    @property
    def name(self) -> str:
        return "fake-catalog"

    async def search(self, query, max_results, image_crop=None):
        self.queries.append((query, max_results, image_crop))
        if self.exc:
            raise self.exc
        return self.products[:max_results]


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def make_backend():
    return FakeBackend


def product(gtin: str, name: str, brand: str = "Acme", category: str = "Dairy-Alt",
            image_url: str | None = None) -> CatalogProduct:
    return CatalogProduct(
        gtin=gtin, product_name=name, brand_name=brand, category=category,
        image_url=image_url or f"https://img.example/{gtin}.png",
    )


@pytest.fixture
def make_product():
    return product
