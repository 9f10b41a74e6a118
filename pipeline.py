"""
pipeline.py: orchestration across the image store, detector and catalog.

Every function takes its collaborators explicitly (store, provider,
backend); the HTTP layer builds them once and passes them in.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import config
from catalog import build_search_term, find_candidates
from database import DetectionStore
from errors import InvalidInput, NotFound
from models import CandidateMatch, Detection, DetectedObject, Image
from providers.base import VisionProvider
from providers.manager import detect
from resolution import detection_state
from search_backends.base import CatalogBackend

logger = logging.getLogger(__name__)


@dataclass
class ImageResults:
    image: Image
    detections: list[Detection]
    candidates: dict[str, list[CandidateMatch]]     # detection id → candidates

    def to_dict(self) -> dict:
        items = []
        for d in self.detections:
            cands = self.candidates.get(d.id, [])
            body = d.to_dict()
            body["state"] = detection_state(d, len(cands)).value
            body["candidates"] = [c.to_dict() for c in cands]
            items.append(body)
        return {"image": self.image.to_dict(), "detections": items}


async def register_image(
    store: DetectionStore,
    uri: str,
    mime_type: str = "image/jpeg",
) -> Image:
    if not isinstance(uri, str) or not uri.strip():
        raise InvalidInput("uri is required and must be a string")
    if mime_type is None:
        mime_type = "image/jpeg"
    if not isinstance(mime_type, str):
        raise InvalidInput("mimeType must be a string")
    uri, mime_type = uri.strip(), mime_type.lower()
    if mime_type not in config.ACCEPTED_MIME_TYPES:
        raise InvalidInput(f"Unsupported mimeType '{mime_type}'")
    image = await store.add_image(uri, mime_type)
    logger.info("Registered image %s (%s)", image.id, uri)
    return image


async def detect_and_store(
    store: DetectionStore,
    provider: VisionProvider,
    image_id: str,
    image_bytes: bytes,
    mime_type: str,
) -> list[Detection]:
    """
    Run detection for a registered image and persist the results.
    An image is detected once; a second run is refused with InvalidInput.
    """
    image = await store.get_image(image_id)
    if image is None:
        raise NotFound(f"Image {image_id} not found")
    if image.detection_completed:
        raise InvalidInput(f"Image {image_id} already has detections")

    objects: list[DetectedObject] = await detect(provider, image_bytes, mime_type)
    detections = await store.insert_detections(image_id, objects)
    if detections is None:
        # lost a race with another detect call for the same image
        raise InvalidInput(f"Image {image_id} already has detections")
    logger.info("Stored %d detections for image %s", len(detections), image_id)
    return detections


async def propose_candidates(
    store: DetectionStore,
    backend: CatalogBackend,
    detection_id: str,
    image_crop: Optional[bytes] = None,
    search_term: Optional[str] = None,
    brand: Optional[str] = None,
    product_name: Optional[str] = None,
    flavor: Optional[str] = None,
    size: Optional[str] = None,
) -> list[CandidateMatch]:
    """
    Search the catalog for a detection and store the results as immutable
    candidates. The query is the detection's label unless the caller refines
    it (see catalog.build_search_term); the query used is kept as each
    candidate's search_term. The detection row itself is not touched.
    """
    detection = await store.get_detection(detection_id)
    if detection is None:
        raise NotFound(f"Detection {detection_id} not found")

    query = build_search_term(
        detection.label, search_term,
        brand=brand, product_name=product_name, flavor=flavor, size=size,
    )
    products = await find_candidates(backend, query, image_crop=image_crop)
    if not products:
        logger.info("No catalog candidates for detection %s ('%s')", detection_id, query)
        return []
    return await store.insert_candidates(detection_id, query, products)


async def list_candidates(store: DetectionStore, detection_id: str) -> list[CandidateMatch]:
    if await store.get_detection(detection_id) is None:
        raise NotFound(f"Detection {detection_id} not found")
    return await store.list_candidates(detection_id)


async def image_results(store: DetectionStore, image_id: str) -> ImageResults:
    image = await store.get_image(image_id)
    if image is None:
        raise NotFound(f"Image {image_id} not found")
    detections = await store.list_detections(image_id)
    candidates = {d.id: await store.list_candidates(d.id) for d in detections}
    return ImageResults(image=image, detections=detections, candidates=candidates)
