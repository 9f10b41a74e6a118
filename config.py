"""
Central configuration: reads from .env file.

Secrets (vision / catalog credentials) are NOT read here: they follow the
DB → env priority implemented in key_store.py, so a key stored through
DetectionStore.set_api_key() overrides the .env value on the next request.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# ── Storage ───────────────────────────────────────────────────────────────────
# The SQLite file and the service log both live here (mount ./data:/app/data)
DATA_DIR: str = os.getenv("DATA_DIR", "data")

# ── HTTP API ──────────────────────────────────────────────────────────────────
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8080"))

# Comma-separated bearer tokens accepted in addition to the api_tokens table
API_TOKENS: set[str] = {
    t.strip()
    for t in os.getenv("API_TOKENS", "").split(",")
    if t.strip()
}

# ── Vision provider ───────────────────────────────────────────────────────────
# google | openai | anthropic
VISION_PROVIDER: str = os.getenv("VISION_PROVIDER", "google").strip().lower()
# Blank → the provider's own default model
VISION_MODEL: str | None = os.getenv("VISION_MODEL", "").strip() or None

ACCEPTED_MIME_TYPES: frozenset[str] = frozenset({
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/heic",
    "image/heif",
})

# Base64 payloads above this size are rejected before calling the model
MAX_IMAGE_BYTES: int = int(os.getenv("MAX_IMAGE_BYTES", str(20 * 1024 * 1024)))

# ── Timeouts (seconds) ────────────────────────────────────────────────────────
# Model inference is by far the slowest call; catalog and storage stay interactive.
DETECT_TIMEOUT_S: float  = float(os.getenv("DETECT_TIMEOUT_S", "90"))
CATALOG_TIMEOUT_S: float = float(os.getenv("CATALOG_TIMEOUT_S", "15"))
STORE_TIMEOUT_S: float   = float(os.getenv("STORE_TIMEOUT_S", "10"))

# ── Catalog (FoodGraph) ───────────────────────────────────────────────────────
FOODGRAPH_BASE_URL: str     = os.getenv("FOODGRAPH_BASE_URL", "https://api.foodgraph.com").rstrip("/")
FOODGRAPH_UPDATED_FROM: str = os.getenv("FOODGRAPH_UPDATED_FROM", "2025-07-01T00:00:00Z")

# How many catalog candidates to keep per detection (FoodGraph caps at 100)
MAX_CANDIDATES: int = int(os.getenv("MAX_CANDIDATES", "50"))
