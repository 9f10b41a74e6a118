"""
Shared prompt, output normalisation and base class for all vision providers.
"""
from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from numbers import Real
from typing import Any

from errors import DetectionUnavailable
from models import BoundingBox, DetectedObject

logger = logging.getLogger(__name__)

# ── Prompt (shared across all providers) ──────────────────────────────────────

SYSTEM_PROMPT = """You are a retail shelf auditing assistant.
Detect every distinct product visible in the image and return ONLY a valid
JSON array. No markdown, no prose.

Each element:
{
  "box_2d": [y0, x0, y1, x1],
  "label":  "short product description (brand + product type if readable)"
}

Coordinates are normalised to 0–1000:
  y0: top edge    (0 = image top,  1000 = image bottom)
  x0: left edge   (0 = image left, 1000 = image right)
  y1: bottom edge (0 = image top,  1000 = image bottom)
  x1: right edge  (0 = image left, 1000 = image right)

Rules:
- One element per physical product facing; boxes must fit tightly
- Return [] if no products are visible
"""

USER_PROMPT = "Detect all visible products in this retail image and return the JSON array."

# Some models wrap the array in an object despite the prompt
_WRAPPER_KEYS = ("detections", "objects", "items", "products")


@dataclass
class RawDetectionResponse:
    """What a provider got back from its model, before normalisation."""
    provider_name: str
    text: str
    latency_ms: int
    input_tokens: int
    output_tokens: int


def parse_json_response(raw: str, provider_name: str) -> Any:
    """
    Parse JSON from a model response, handling markdown fences gracefully.
    Raises ValueError on parse failure.
    """
    text = raw.strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response: %s", provider_name, raw[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc


def _is_number(value: Any) -> bool:
    # bool is an int subclass; a box of True/False is not a box. NaN and
    # Infinity parse from JSON but are not coordinates.
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def normalise_item(item: Any) -> DetectedObject | None:
    """Validate one raw model item. Returns None when it must be dropped."""
    if not isinstance(item, dict):
        return None
    label = item.get("label")
    if not isinstance(label, str) or not label.strip():
        return None
    box = item.get("box_2d", item.get("box"))
    if not isinstance(box, (list, tuple)) or len(box) != 4:
        return None
    if not all(_is_number(v) for v in box):
        return None
    return DetectedObject(
        label=label.strip(),
        box=BoundingBox.from_box_2d([float(v) for v in box]),
    )


def normalise_detections(raw: str, provider_name: str) -> list[DetectedObject]:
    """
    Turn raw model text into validated detections.

    Malformed items are dropped (and logged) so one bad box doesn't sink the
    whole image. The response as a whole must still be usable:
      • empty text / non-JSON / not a list     → DetectionUnavailable
      • non-empty list where every item is bad → DetectionUnavailable
      • []                                     → [] (nothing on the shelf)
    """
    if not raw or not raw.strip():
        raise DetectionUnavailable(f"[{provider_name}] empty model response")
    try:
        data = parse_json_response(raw, provider_name)
    except ValueError as exc:
        raise DetectionUnavailable(str(exc)) from exc

    if isinstance(data, dict):
        data = next((data[k] for k in _WRAPPER_KEYS if isinstance(data.get(k), list)), data)
    if not isinstance(data, list):
        raise DetectionUnavailable(
            f"[{provider_name}] expected a JSON array, got {type(data).__name__}"
        )

    detections: list[DetectedObject] = []
    for i, item in enumerate(data):
        obj = normalise_item(item)
        if obj is None:
            logger.warning("[%s] Dropped malformed detection #%d: %.200r", provider_name, i, item)
            continue
        detections.append(obj)

    if data and not detections:
        raise DetectionUnavailable(
            f"[{provider_name}] all {len(data)} detections were malformed"
        )
    if len(detections) < len(data):
        logger.info("[%s] Kept %d of %d detections", provider_name, len(detections), len(data))
    return detections


# ── Abstract base ──────────────────────────────────────────────────────────────

class VisionProvider(ABC):
    """Base class all vision providers must implement."""

    name: str           # e.g. "google"
    model_id: str       # e.g. "gemini-2.5-flash"

    @abstractmethod
    async def detect_raw(self, image_bytes: bytes, mime_type: str) -> RawDetectionResponse:
        """
        Send the image to the model with the detection prompt.
        SDK / transport errors propagate; the manager translates them.
        """
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"
