"""
Tests for resolution.py.

Covers:
  - resolve(): copies candidate fields, idempotent, overwrite allowed
  - NotFound for unknown detection / candidate / foreign candidate
  - InvalidInput for blank ids
  - PersistenceError propagates unchanged
  - detection_state(): PENDING → CANDIDATES_PROPOSED → RESOLVED
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest
import pytest_asyncio

from errors import InvalidInput, NotFound, PersistenceError
from models import DetectionState
from resolution import detection_state, resolve

_NOW = datetime(2024, 5, 1, tzinfo=timezone.utc).isoformat()


async def _insert_candidate(store, cand_id: str, detection_id: str, gtin: str, name: str,
                            brand: str = "Acme", category: str = "Dairy-Alt",
                            image_url: str = "https://x/img.png", rank: int = 1) -> None:
    async with aiosqlite.connect(store.path) as db:
        await db.execute(
            """INSERT INTO candidate_matches
               (id, detection_id, rank, search_term, gtin, product_name,
                brand_name, category, image_url, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (cand_id, detection_id, rank, "milk", gtin, name, brand, category, image_url, _NOW),
        )
        await db.commit()


async def _insert_detection(store, det_id: str, image_id: str = "img-1") -> None:
    async with aiosqlite.connect(store.path) as db:
        await db.execute(
            """INSERT OR IGNORE INTO images (id, uri, mime_type, uploaded_at)
               VALUES (?, ?, ?, ?)""",
            (image_id, "shelf.jpg", "image/jpeg", _NOW),
        )
        await db.execute(
            """INSERT INTO detections
               (id, image_id, detection_index, label, y0, x0, y1, x1, created_at)
               VALUES (?, ?, 0, 'Milk carton', 10, 20, 300, 400, ?)""",
            (det_id, image_id, _NOW),
        )
        await db.commit()


@pytest_asyncio.fixture
async def seeded(store):
    """det-1 with two candidates (cand-9 Oat Milk, cand-10 Soy Milk); det-2 with cand-20."""
    await _insert_detection(store, "det-1")
    await _insert_detection(store, "det-2")
    await _insert_candidate(store, "cand-9", "det-1", "0001", "Oat Milk")
    await _insert_candidate(store, "cand-10", "det-1", "0002", "Soy Milk",
                            brand="Soyco", category="Plant Milk",
                            image_url="https://x/soy.png", rank=2)
    await _insert_candidate(store, "cand-20", "det-2", "0003", "Almond Milk")
    return store


# ── resolve ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestResolve:
    async def test_copies_candidate_into_detection(self, seeded):
        result = await resolve(seeded, "det-1", "cand-9")

        d = await seeded.get_detection("det-1")
        assert d.selected_gtin == "0001"
        assert d.selected_product_name == "Oat Milk"
        assert d.selected_brand_name == "Acme"
        assert d.selected_category == "Dairy-Alt"
        assert d.selected_image_url == "https://x/img.png"
        assert d.selected_candidate_id == "cand-9"
        assert d.fully_analyzed is True
        assert d.analysis_completed_at is not None
        assert d.updated_at is not None

        assert result.to_dict()["savedMatch"] == {
            "gtin": "0001",
            "productName": "Oat Milk",
            "brandName": "Acme",
            "category": "Dairy-Alt",
            "imageUrl": "https://x/img.png",
        }
        assert result.to_dict()["success"] is True

    async def test_detection_geometry_untouched(self, seeded):
        await resolve(seeded, "det-1", "cand-9")
        d = await seeded.get_detection("det-1")
        assert d.label == "Milk carton"
        assert d.box.to_dict() == {"y0": 10, "x0": 20, "y1": 300, "x1": 400}

    async def test_idempotent(self, seeded):
        first = await resolve(seeded, "det-1", "cand-9")
        second = await resolve(seeded, "det-1", "cand-9")
        assert first.detection.selection() == second.detection.selection()
        assert first.saved_match == second.saved_match

    async def test_overwrite_replaces_every_field(self, seeded):
        await resolve(seeded, "det-1", "cand-9")
        await resolve(seeded, "det-1", "cand-10")
        d = await seeded.get_detection("det-1")
        assert d.selection() == (
            "0002", "Soy Milk", "Soyco", "Plant Milk", "https://x/soy.png", "cand-10",
        )
        assert d.fully_analyzed is True

    async def test_concurrent_resolves_return_their_own_write(self, seeded):
        picks = ["cand-9", "cand-10"] * 6
        results = await asyncio.gather(*(resolve(seeded, "det-1", c) for c in picks))

        for cand_id, result in zip(picks, results):
            saved = result.saved_match
            d = result.detection
            assert d.selected_candidate_id == cand_id
            assert (d.selected_gtin, d.selected_product_name, d.selected_brand_name,
                    d.selected_category, d.selected_image_url) == \
                (saved.gtin, saved.product_name, saved.brand_name, saved.category, saved.image_url)

        final = await seeded.get_detection("det-1")
        assert final.selection() in {
            ("0001", "Oat Milk", "Acme", "Dairy-Alt", "https://x/img.png", "cand-9"),
            ("0002", "Soy Milk", "Soyco", "Plant Milk", "https://x/soy.png", "cand-10"),
        }

    async def test_unknown_candidate_leaves_detection_unchanged(self, seeded):
        before = await seeded.get_detection("det-1")
        with pytest.raises(NotFound):
            await resolve(seeded, "det-1", "cand-missing")
        after = await seeded.get_detection("det-1")
        assert after == before
        assert not after.fully_analyzed

    async def test_unknown_detection(self, seeded):
        with pytest.raises(NotFound, match="det-missing"):
            await resolve(seeded, "det-missing", "cand-9")

    async def test_candidate_from_other_detection(self, seeded):
        with pytest.raises(NotFound):
            await resolve(seeded, "det-1", "cand-20")
        assert not (await seeded.get_detection("det-1")).fully_analyzed

    @pytest.mark.parametrize("det_id,cand_id", [("", "cand-9"), ("det-1", ""), (None, None)])
    async def test_blank_ids_are_invalid_input(self, seeded, det_id, cand_id):
        with pytest.raises(InvalidInput):
            await resolve(seeded, det_id, cand_id)

    async def test_persistence_error_propagates(self, seeded):
        failing = AsyncMock(side_effect=PersistenceError("database is locked"))
        with patch.object(seeded, "commit_selection", failing):
            with pytest.raises(PersistenceError, match="locked"):
                await resolve(seeded, "det-1", "cand-9")
        assert not (await seeded.get_detection("det-1")).fully_analyzed

    async def test_row_vanishing_before_write_is_not_found(self, seeded):
        with patch.object(seeded, "commit_selection", AsyncMock(return_value=None)):
            with pytest.raises(NotFound):
                await resolve(seeded, "det-1", "cand-9")


# ── detection_state ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDetectionState:
    async def test_pending_without_candidates(self, store):
        await _insert_detection(store, "det-p")
        d = await store.get_detection("det-p")
        assert detection_state(d, 0) is DetectionState.PENDING

    async def test_candidates_proposed(self, seeded):
        d = await seeded.get_detection("det-1")
        assert detection_state(d, await seeded.count_candidates("det-1")) is \
            DetectionState.CANDIDATES_PROPOSED

    async def test_resolved(self, seeded):
        result = await resolve(seeded, "det-1", "cand-9")
        assert detection_state(result.detection, 2) is DetectionState.RESOLVED

    async def test_resolved_stays_resolved_after_overwrite(self, seeded):
        await resolve(seeded, "det-1", "cand-9")
        result = await resolve(seeded, "det-1", "cand-10")
        assert detection_state(result.detection, 2) is DetectionState.RESOLVED
