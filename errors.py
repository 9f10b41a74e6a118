"""
Typed failure kinds shared by every pipeline operation.

Each error carries a stable machine-readable `kind`, the HTTP status the API
boundary maps it to, and a human-readable `details` string. Nothing else
(stack frames, SDK internals) ever reaches a caller.
"""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    kind: str = "InternalError"
    status: int = 500
    message: str = "Internal server error"

    def __init__(self, details: Optional[str] = None) -> None:
        super().__init__(details or self.message)
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "kind": self.kind}
        if self.details:
            body["details"] = self.details
        return body


class InvalidInput(PipelineError):
    kind = "InvalidInput"
    status = 400
    message = "Invalid input"


class Unauthorized(PipelineError):
    kind = "Unauthorized"
    status = 401
    message = "Unauthorized"


class NotFound(PipelineError):
    kind = "NotFound"
    status = 404
    message = "Not found"


class DetectionUnavailable(PipelineError):
    """The vision model could not be reached, timed out or returned garbage."""
    kind = "DetectionUnavailable"
    message = "Detection failed"


class CatalogUnavailable(PipelineError):
    """Transport or auth failure talking to the product catalog."""
    kind = "CatalogUnavailable"
    message = "Catalog search failed"


class PersistenceError(PipelineError):
    kind = "PersistenceError"
    message = "Failed to save result"
