"""
models.py: canonical home of the records shared by the pipeline.

database.py, providers/ and resolution.py all import from here so the
storage layer never depends on a particular vision provider or catalog.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box on the model's 0–1000 normalized scale."""
    y0: float   # top
    x0: float   # left
    y1: float   # bottom
    x1: float   # right

    @classmethod
    def from_box_2d(cls, box: list[float]) -> "BoundingBox":
        """Map a raw [top, left, bottom, right] model box onto named edges."""
        return cls(y0=box[0], x0=box[1], y1=box[2], x1=box[3])

    def to_dict(self) -> dict:
        return {"y0": self.y0, "x0": self.x0, "y1": self.y1, "x1": self.x1}


@dataclass(frozen=True)
class DetectedObject:
    """One normalized item returned by the vision detector adapter."""
    label: str
    box: BoundingBox

    def to_dict(self) -> dict:
        return {"label": self.label, "boundingBox": self.box.to_dict()}


@dataclass
class Image:
    id: str
    uri: str
    mime_type: str
    uploaded_at: datetime
    detection_completed: bool = False
    detection_completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "uri": self.uri,
            "mime_type": self.mime_type,
            "uploaded_at": self.uploaded_at.isoformat(),
            "detection_completed": self.detection_completed,
            "detection_completed_at": _iso(self.detection_completed_at),
        }


@dataclass
class Detection:
    id: str
    image_id: str
    detection_index: int
    label: str
    box: BoundingBox
    created_at: datetime

    # Resolution attributes, all None until a candidate is committed
    selected_gtin: Optional[str] = None
    selected_product_name: Optional[str] = None
    selected_brand_name: Optional[str] = None
    selected_category: Optional[str] = None
    selected_image_url: Optional[str] = None
    selected_candidate_id: Optional[str] = None
    fully_analyzed: bool = False
    analysis_completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def selection(self) -> tuple:
        """The selected-* snapshot, for comparing resolutions."""
        return (
            self.selected_gtin,
            self.selected_product_name,
            self.selected_brand_name,
            self.selected_category,
            self.selected_image_url,
            self.selected_candidate_id,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "image_id": self.image_id,
            "detection_index": self.detection_index,
            "label": self.label,
            "bounding_box": self.box.to_dict(),
            "created_at": self.created_at.isoformat(),
            "selected_gtin": self.selected_gtin,
            "selected_product_name": self.selected_product_name,
            "selected_brand_name": self.selected_brand_name,
            "selected_category": self.selected_category,
            "selected_image_url": self.selected_image_url,
            "selected_candidate_id": self.selected_candidate_id,
            "fully_analyzed": self.fully_analyzed,
            "analysis_completed_at": _iso(self.analysis_completed_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class CandidateMatch:
    """A catalog product stored against one detection. Never mutated."""
    id: str
    detection_id: str
    rank: int                   # 1 = catalog's best match
    search_term: str
    gtin: Optional[str]
    product_name: Optional[str]
    brand_name: Optional[str]
    category: Optional[str]
    image_url: Optional[str]
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "detection_id": self.detection_id,
            "rank": self.rank,
            "search_term": self.search_term,
            "gtin": self.gtin,
            "product_name": self.product_name,
            "brand_name": self.brand_name,
            "category": self.category,
            "image_url": self.image_url,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SavedMatch:
    """Compact snapshot of the committed candidate returned by resolve()."""
    gtin: Optional[str]
    product_name: Optional[str]
    brand_name: Optional[str]
    category: Optional[str]
    image_url: Optional[str]

    @classmethod
    def from_candidate(cls, candidate: CandidateMatch) -> "SavedMatch":
        return cls(
            gtin=candidate.gtin,
            product_name=candidate.product_name,
            brand_name=candidate.brand_name,
            category=candidate.category,
            image_url=candidate.image_url,
        )

    def to_dict(self) -> dict:
        return {
            "gtin": self.gtin,
            "productName": self.product_name,
            "brandName": self.brand_name,
            "category": self.category,
            "imageUrl": self.image_url,
        }


class DetectionState(str, enum.Enum):
    PENDING = "PENDING"
    CANDIDATES_PROPOSED = "CANDIDATES_PROPOSED"
    RESOLVED = "RESOLVED"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
