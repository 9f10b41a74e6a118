"""
database.py: async SQLite persistence via aiosqlite.

Tables:
  images             - uploaded image references (URI + upload timestamp)
  detections         - one row per product instance found in an image
  candidate_matches  - immutable catalog candidates proposed for a detection
  api_keys           - vision / catalog credentials (override .env values)
  api_tokens         - bearer tokens accepted by the HTTP API (sha256 only)

DetectionStore is created once at startup and passed to every operation;
nothing in the pipeline reaches for a module-level connection. The DB file
is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

import config
from errors import PersistenceError
from models import BoundingBox, CandidateMatch, DetectedObject, Detection, Image
from search_backends.base import CatalogProduct

logger = logging.getLogger(__name__)


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS images (
    id                     TEXT PRIMARY KEY,
    uri                    TEXT    NOT NULL,
    mime_type              TEXT    NOT NULL DEFAULT 'image/jpeg',
    uploaded_at            TEXT    NOT NULL,
    detection_completed    INTEGER NOT NULL DEFAULT 0,
    detection_completed_at TEXT
);

CREATE TABLE IF NOT EXISTS detections (
    id                    TEXT PRIMARY KEY,
    image_id              TEXT    NOT NULL REFERENCES images (id),
    detection_index       INTEGER NOT NULL,
    label                 TEXT    NOT NULL,
    y0                    REAL    NOT NULL,
    x0                    REAL    NOT NULL,
    y1                    REAL    NOT NULL,
    x1                    REAL    NOT NULL,
    created_at            TEXT    NOT NULL,
    -- selected-* columns are written together by commit_selection() only
    selected_gtin         TEXT,
    selected_product_name TEXT,
    selected_brand_name   TEXT,
    selected_category     TEXT,
    selected_image_url    TEXT,
    selected_candidate_id TEXT,
    fully_analyzed        INTEGER NOT NULL DEFAULT 0,
    analysis_completed_at TEXT,
    updated_at            TEXT
);
CREATE INDEX IF NOT EXISTS idx_detections_image ON detections (image_id, detection_index);

CREATE TABLE IF NOT EXISTS candidate_matches (
    id           TEXT PRIMARY KEY,
    detection_id TEXT    NOT NULL REFERENCES detections (id),
    rank         INTEGER NOT NULL,
    search_term  TEXT    NOT NULL DEFAULT '',
    gtin         TEXT,
    product_name TEXT,
    brand_name   TEXT,
    category     TEXT,
    image_url    TEXT,
    created_at   TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_candidates_detection ON candidate_matches (detection_id, rank);

CREATE TABLE IF NOT EXISTS api_keys (
    key_name   TEXT PRIMARY KEY,
    key_value  TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS api_tokens (
    token_hash TEXT PRIMARY KEY,
    principal  TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ── Row mappers ───────────────────────────────────────────────────────────────

def _image(r: aiosqlite.Row) -> Image:
    return Image(
        id=r["id"],
        uri=r["uri"],
        mime_type=r["mime_type"],
        uploaded_at=datetime.fromisoformat(r["uploaded_at"]),
        detection_completed=bool(r["detection_completed"]),
        detection_completed_at=_dt(r["detection_completed_at"]),
    )


def _detection(r: aiosqlite.Row) -> Detection:
    return Detection(
        id=r["id"],
        image_id=r["image_id"],
        detection_index=r["detection_index"],
        label=r["label"],
        box=BoundingBox(y0=r["y0"], x0=r["x0"], y1=r["y1"], x1=r["x1"]),
        created_at=datetime.fromisoformat(r["created_at"]),
        selected_gtin=r["selected_gtin"],
        selected_product_name=r["selected_product_name"],
        selected_brand_name=r["selected_brand_name"],
        selected_category=r["selected_category"],
        selected_image_url=r["selected_image_url"],
        selected_candidate_id=r["selected_candidate_id"],
        fully_analyzed=bool(r["fully_analyzed"]),
        analysis_completed_at=_dt(r["analysis_completed_at"]),
        updated_at=_dt(r["updated_at"]),
    )


def _candidate(r: aiosqlite.Row) -> CandidateMatch:
    return CandidateMatch(
        id=r["id"],
        detection_id=r["detection_id"],
        rank=r["rank"],
        search_term=r["search_term"],
        gtin=r["gtin"],
        product_name=r["product_name"],
        brand_name=r["brand_name"],
        category=r["category"],
        image_url=r["image_url"],
        created_at=datetime.fromisoformat(r["created_at"]),
    )


class DetectionStore:
    """Row-addressable store for images, detections and candidates."""

    def __init__(self, path: str, timeout: float = config.STORE_TIMEOUT_S) -> None:
        self.path = path
        self.timeout = timeout
        self._lock = asyncio.Lock()     # serialise schema creation

    @classmethod
    def in_data_dir(cls, data_dir: str = config.DATA_DIR) -> "DetectionStore":
        directory = Path(data_dir)
        directory.mkdir(parents=True, exist_ok=True)
        return cls(str(directory / "detections.db"))

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection; any sqlite failure surfaces as PersistenceError."""
        try:
            async with aiosqlite.connect(self.path, timeout=self.timeout) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except aiosqlite.Error as exc:
            logger.error("Database error (%s): %s", self.path, exc)
            raise PersistenceError(str(exc)) from exc

    async def init_db(self) -> None:
        """Create tables if they don't exist. Safe to call multiple times."""
        async with self._lock:
            async with self._connect() as db:
                await db.executescript(_SCHEMA)
                await db.commit()
        logger.info("Database initialised at %s", self.path)

    # ── Images ────────────────────────────────────────────────────────────────

    async def add_image(self, uri: str, mime_type: str = "image/jpeg") -> Image:
        image = Image(id=_new_id(), uri=uri, mime_type=mime_type, uploaded_at=_now())
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO images (id, uri, mime_type, uploaded_at) VALUES (?, ?, ?, ?)",
                (image.id, image.uri, image.mime_type, image.uploaded_at.isoformat()),
            )
            await db.commit()
        return image

    async def get_image(self, image_id: str) -> Optional[Image]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM images WHERE id = ?", (image_id,)) as cur:
                row = await cur.fetchone()
        return _image(row) if row else None

    async def list_images(self, limit: int = 100) -> list[Image]:
        """Most recently uploaded first."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM images ORDER BY uploaded_at DESC LIMIT ?", (limit,)
            ) as cur:
                rows = await cur.fetchall()
        return [_image(r) for r in rows]

    # ── Detections ────────────────────────────────────────────────────────────

    async def insert_detections(
        self,
        image_id: str,
        objects: list[DetectedObject],
    ) -> Optional[list[Detection]]:
        """
        Store the adapter's output for an image and flag the image as detected.
        Runs in a single transaction; detection_index follows the model order.

        An image is detected once. Returns None, writing nothing, when the
        image is missing or already flagged as detected.
        """
        now = _now()
        detections = [
            Detection(
                id=_new_id(),
                image_id=image_id,
                detection_index=i,
                label=obj.label,
                box=obj.box,
                created_at=now,
            )
            for i, obj in enumerate(objects)
        ]
        async with self._connect() as db:
            cursor = await db.execute(
                """UPDATE images SET detection_completed = 1, detection_completed_at = ?
                   WHERE id = ? AND detection_completed = 0""",
                (now.isoformat(), image_id),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return None
            await db.executemany(
                """INSERT INTO detections
                   (id, image_id, detection_index, label, y0, x0, y1, x1, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (d.id, d.image_id, d.detection_index, d.label,
                     d.box.y0, d.box.x0, d.box.y1, d.box.x1, now.isoformat())
                    for d in detections
                ],
            )
            await db.commit()
        return detections

    async def get_detection(self, detection_id: str) -> Optional[Detection]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM detections WHERE id = ?", (detection_id,)
            ) as cur:
                row = await cur.fetchone()
        return _detection(row) if row else None

    async def list_detections(self, image_id: str) -> list[Detection]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM detections WHERE image_id = ? ORDER BY detection_index",
                (image_id,),
            ) as cur:
                rows = await cur.fetchall()
        return [_detection(r) for r in rows]

    async def commit_selection(
        self,
        detection_id: str,
        candidate: CandidateMatch,
        at: datetime,
    ) -> Optional[Detection]:
        """
        Copy a candidate into the detection's selected-* columns.

        This is the only write path for those columns. One row, one UPDATE,
        one commit: readers see either the old selection or the new one.
        Concurrent callers on the same row are last-write-wins.
        Returns the updated detection, or None if the row does not exist.
        """
        stamp = at.isoformat()
        async with self._connect() as db:
            cursor = await db.execute(
                """UPDATE detections SET
                     selected_gtin         = ?,
                     selected_product_name = ?,
                     selected_brand_name   = ?,
                     selected_category     = ?,
                     selected_image_url    = ?,
                     selected_candidate_id = ?,
                     fully_analyzed        = 1,
                     analysis_completed_at = ?,
                     updated_at            = ?
                   WHERE id = ?""",
                (
                    candidate.gtin,
                    candidate.product_name,
                    candidate.brand_name,
                    candidate.category,
                    candidate.image_url,
                    candidate.id,
                    stamp,
                    stamp,
                    detection_id,
                ),
            )
            if cursor.rowcount == 0:
                return None
            # read before commit: the row returned is the one this call wrote
            async with db.execute(
                "SELECT * FROM detections WHERE id = ?", (detection_id,)
            ) as cur:
                row = await cur.fetchone()
            await db.commit()
        return _detection(row) if row else None

    # ── Candidate matches ─────────────────────────────────────────────────────

    async def insert_candidates(
        self,
        detection_id: str,
        search_term: str,
        products: list[CatalogProduct],
    ) -> list[CandidateMatch]:
        """Persist catalog results in their given order (rank 1 = best)."""
        now = _now()
        candidates = [
            CandidateMatch(
                id=_new_id(),
                detection_id=detection_id,
                rank=rank,
                search_term=search_term,
                gtin=p.gtin,
                product_name=p.product_name,
                brand_name=p.brand_name,
                category=p.category,
                image_url=p.image_url,
                created_at=now,
            )
            for rank, p in enumerate(products, start=1)
        ]
        async with self._connect() as db:
            await db.executemany(
                """INSERT INTO candidate_matches
                   (id, detection_id, rank, search_term, gtin, product_name,
                    brand_name, category, image_url, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (c.id, c.detection_id, c.rank, c.search_term, c.gtin, c.product_name,
                     c.brand_name, c.category, c.image_url, now.isoformat())
                    for c in candidates
                ],
            )
            await db.commit()
        return candidates

    async def get_candidate(self, candidate_id: str) -> Optional[CandidateMatch]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM candidate_matches WHERE id = ?", (candidate_id,)
            ) as cur:
                row = await cur.fetchone()
        return _candidate(row) if row else None

    async def list_candidates(self, detection_id: str) -> list[CandidateMatch]:
        async with self._connect() as db:
            async with db.execute(
                """SELECT * FROM candidate_matches WHERE detection_id = ?
                   ORDER BY created_at, rank""",
                (detection_id,),
            ) as cur:
                rows = await cur.fetchall()
        return [_candidate(r) for r in rows]

    async def count_candidates(self, detection_id: str) -> int:
        async with self._connect() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM candidate_matches WHERE detection_id = ?",
                (detection_id,),
            ) as cur:
                return (await cur.fetchone())[0]

    # ── API key operations ────────────────────────────────────────────────────

    async def get_api_key(self, key_name: str) -> Optional[str]:
        """Return DB-stored value for key_name, or None if not set."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT key_value FROM api_keys WHERE key_name = ?", (key_name,)
            ) as cur:
                row = await cur.fetchone()
                return row[0] if row else None

    async def set_api_key(self, key_name: str, key_value: str) -> None:
        """Insert or replace an API key in the DB."""
        async with self._connect() as db:
            await db.execute(
                """INSERT INTO api_keys (key_name, key_value, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key_name) DO UPDATE SET
                     key_value=excluded.key_value,
                     updated_at=excluded.updated_at""",
                (key_name, key_value, _now().isoformat()),
            )
            await db.commit()

    async def delete_api_key(self, key_name: str) -> None:
        """Remove a key from DB (falls back to the .env value)."""
        async with self._connect() as db:
            await db.execute("DELETE FROM api_keys WHERE key_name = ?", (key_name,))
            await db.commit()

    # ── API tokens ────────────────────────────────────────────────────────────

    async def add_api_token(self, token: str, principal: str) -> None:
        """Register a bearer token. Only its sha256 digest is stored."""
        async with self._connect() as db:
            await db.execute(
                """INSERT INTO api_tokens (token_hash, principal, created_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(token_hash) DO UPDATE SET principal=excluded.principal""",
                (hash_token(token), principal, _now().isoformat()),
            )
            await db.commit()

    async def get_token_principal(self, token: str) -> Optional[str]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT principal FROM api_tokens WHERE token_hash = ?", (hash_token(token),)
            ) as cur:
                row = await cur.fetchone()
                return row[0] if row else None

    async def revoke_api_token(self, token: str) -> bool:
        """Returns True if a token was removed."""
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM api_tokens WHERE token_hash = ?", (hash_token(token),)
            )
            await db.commit()
            return cursor.rowcount > 0
