"""
resolution.py: commit one catalog candidate as a detection's identity.

Lifecycle of a detection:
  PENDING              no candidates stored yet
  CANDIDATES_PROPOSED  catalog candidates stored, operator hasn't chosen
  RESOLVED             a candidate was committed (fully_analyzed = true)

resolve() is the only operation that moves a detection to RESOLVED and the
only caller of DetectionStore.commit_selection(). Re-resolving an already
resolved detection overwrites the previous choice; there is no separate
"unresolve". Concurrent resolves on the same detection are last-write-wins.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from database import DetectionStore
from errors import InvalidInput, NotFound
from models import Detection, DetectionState, SavedMatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolveResult:
    detection: Detection
    saved_match: SavedMatch

    def to_dict(self) -> dict:
        return {
            "success": True,
            "detection": self.detection.to_dict(),
            "savedMatch": self.saved_match.to_dict(),
        }


def detection_state(detection: Detection, candidate_count: int) -> DetectionState:
    if detection.fully_analyzed:
        return DetectionState.RESOLVED
    if candidate_count > 0:
        return DetectionState.CANDIDATES_PROPOSED
    return DetectionState.PENDING


async def resolve(
    store: DetectionStore,
    detection_id: str,
    candidate_id: str,
) -> ResolveResult:
    """
    Copy the chosen candidate into the detection's selected-* fields.

    Raises:
        InvalidInput      - either id is blank
        NotFound          - detection or candidate missing, or the candidate
                            was proposed for a different detection
        PersistenceError  - the store failed; not retried here
    """
    if not detection_id or not candidate_id:
        raise InvalidInput("detectionId and candidateId are required")

    detection = await store.get_detection(detection_id)
    if detection is None:
        raise NotFound(f"Detection {detection_id} not found")

    candidate = await store.get_candidate(candidate_id)
    if candidate is None or candidate.detection_id != detection_id:
        raise NotFound(f"Candidate {candidate_id} not found for detection {detection_id}")

    if detection.fully_analyzed and detection.selected_candidate_id != candidate_id:
        logger.info(
            "Re-resolving detection %s: %s → %s",
            detection_id, detection.selected_candidate_id, candidate_id,
        )

    updated = await store.commit_selection(
        detection_id, candidate, at=datetime.now(timezone.utc)
    )
    if updated is None:
        # Row vanished between the read and the write
        raise NotFound(f"Detection {detection_id} not found")

    logger.info(
        "Resolved detection %s → GTIN %s (%s)",
        detection_id, candidate.gtin, candidate.product_name,
    )
    return ResolveResult(detection=updated, saved_match=SavedMatch.from_candidate(candidate))
