"""
Provider Manager: builds the configured vision provider and runs detection.

Keys are read from key_store (DB → .env fallback) when the provider is
built. The service builds one provider at startup and passes it into every
detect() call; nothing here is cached at module level.

Providers (VISION_PROVIDER):
  google     - Gemini via google-genai  (default, native box_2d output)
  openai     - gpt-4o family
  anthropic  - Claude
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import config
import key_store
from database import DetectionStore
from errors import DetectionUnavailable, InvalidInput, PipelineError
from models import DetectedObject
from providers.base import VisionProvider, normalise_detections

logger = logging.getLogger(__name__)

# provider name → key_store key
_KEY_NAMES = {
    "google":    "google_api_key",
    "openai":    "openai_api_key",
    "anthropic": "anthropic_api_key",
}


def _make_provider(name: str, api_key: str, model: Optional[str]) -> VisionProvider:
    if name == "google":
        from providers.gemini_provider import DEFAULT_MODEL, GeminiProvider
        return GeminiProvider(api_key, model or DEFAULT_MODEL)
    if name == "openai":
        from providers.openai_provider import DEFAULT_MODEL, OpenAIProvider
        return OpenAIProvider(api_key, model or DEFAULT_MODEL)
    from providers.anthropic_provider import DEFAULT_MODEL, AnthropicProvider
    return AnthropicProvider(api_key, model or DEFAULT_MODEL)


async def build_provider(
    store: DetectionStore,
    name: Optional[str] = None,
    model: Optional[str] = None,
) -> VisionProvider:
    """
    Instantiate the requested provider (defaults to config.VISION_PROVIDER).
    Raises DetectionUnavailable when its API key is not configured.
    """
    name = (name or config.VISION_PROVIDER).lower()
    if name not in _KEY_NAMES:
        available = ", ".join(_KEY_NAMES)
        raise ValueError(f"Unknown vision provider '{name}'. Available: {available}")

    api_key = await key_store.get(store, _KEY_NAMES[name])
    if not api_key:
        raise DetectionUnavailable(
            f"No API key for vision provider '{name}' "
            f"(set {_KEY_NAMES[name].upper()} or store it in api_keys)"
        )

    provider = _make_provider(name, api_key, model or config.VISION_MODEL)
    logger.info("Loaded vision provider: %s", provider.full_name)
    return provider


def validate_image(image_bytes: bytes, mime_type: str) -> None:
    """Raise InvalidInput for payloads the model must never see."""
    if not image_bytes:
        raise InvalidInput("Image data is empty")
    if not mime_type or mime_type.lower() not in config.ACCEPTED_MIME_TYPES:
        accepted = ", ".join(sorted(config.ACCEPTED_MIME_TYPES))
        raise InvalidInput(f"Unsupported mimeType '{mime_type}'. Accepted: {accepted}")
    if len(image_bytes) > config.MAX_IMAGE_BYTES:
        raise InvalidInput(
            f"Image is {len(image_bytes)} bytes; limit is {config.MAX_IMAGE_BYTES}"
        )


# ── Core detection function ───────────────────────────────────────────────────

async def detect(
    provider: VisionProvider,
    image_bytes: bytes,
    mime_type: str,
    timeout: float = config.DETECT_TIMEOUT_S,
) -> list[DetectedObject]:
    """
    Run product detection on one image.

    Returns normalised detections (y0=box[0], x0=box[1], y1=box[2], x1=box[3]).
    Raises InvalidInput for bad input and DetectionUnavailable when the model
    times out, errors, or returns unusable output. Nothing is persisted.
    """
    validate_image(image_bytes, mime_type)
    mime_type = mime_type.lower()

    try:
        raw = await asyncio.wait_for(provider.detect_raw(image_bytes, mime_type), timeout)
    except asyncio.TimeoutError as exc:
        logger.error("[%s] Detection timed out after %.0fs", provider.full_name, timeout)
        raise DetectionUnavailable(f"Detection timed out after {timeout:.0f}s") from exc
    except PipelineError:
        raise
    except Exception as exc:
        logger.error("[%s] Failed: %s", provider.full_name, exc)
        raise DetectionUnavailable(f"[{provider.full_name}] {exc}") from exc

    detections = normalise_detections(raw.text, provider.full_name)
    logger.info(
        "[%s] OK %d detections latency=%dms tokens=%d/%d",
        provider.full_name, len(detections), raw.latency_ms,
        raw.input_tokens, raw.output_tokens,
    )
    return detections
