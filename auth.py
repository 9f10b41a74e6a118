"""
auth.py: bearer-token check at the edge of the HTTP API.

Token priority mirrors key_store:
  1. api_tokens table (sha256 digests, see DetectionStore.add_api_token)
  2. API_TOKENS env var (comma-separated, for bootstrap / local runs)

Issuing tokens and user sessions are not handled here.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import config
from database import DetectionStore
from errors import Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    name: str


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def authenticate(store: DetectionStore, header: Optional[str]) -> Principal:
    """Return the caller's principal or raise Unauthorized."""
    token = bearer_token(header)
    if token is None:
        raise Unauthorized("Missing bearer token")

    principal = await store.get_token_principal(token)
    if principal:
        return Principal(name=principal)

    for known in config.API_TOKENS:
        if hmac.compare_digest(known.encode(), token.encode()):
            return Principal(name="env")

    logger.warning("Rejected request with unknown token %s…", token[:4])
    raise Unauthorized("Invalid token")
