"""
Google Gemini vision provider: uses the google-genai SDK.

Gemini is the default detector: its models are trained to emit box_2d in
[y0, x0, y1, x1] order on a 0–1000 scale, which is exactly the convention
the rest of the pipeline expects.
"""
from __future__ import annotations

import time
import logging

from google import genai
from google.genai import types as genai_types

from providers.base import (
    SYSTEM_PROMPT, USER_PROMPT,
    RawDetectionResponse, VisionProvider,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"

_SAFETY_OFF = [
    genai_types.SafetySetting(category="HARM_CATEGORY_HARASSMENT",        threshold="OFF"),
    genai_types.SafetySetting(category="HARM_CATEGORY_HATE_SPEECH",       threshold="OFF"),
    genai_types.SafetySetting(category="HARM_CATEGORY_SEXUALLY_EXPLICIT", threshold="OFF"),
    genai_types.SafetySetting(category="HARM_CATEGORY_DANGEROUS_CONTENT", threshold="OFF"),
]


class GeminiProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.name     = "google"
        self.model_id = model
        self._client  = genai.Client(api_key=api_key)

    async def detect_raw(self, image_bytes: bytes, mime_type: str) -> RawDetectionResponse:
        gen_config = genai_types.GenerateContentConfig(
            system_instruction=SYSTEM_PROMPT,
            temperature=0,      # deterministic boxes
            response_mime_type="application/json",
            safety_settings=_SAFETY_OFF,
        )

        t0 = time.monotonic()

        response = await self._client.aio.models.generate_content(
            model=self.model_id,
            contents=[
                genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                USER_PROMPT,
            ],
            config=gen_config,
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        usage = response.usage_metadata

        return RawDetectionResponse(
            provider_name = self.full_name,
            text          = response.text or "",
            latency_ms    = latency_ms,
            input_tokens  = getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens = getattr(usage, "candidates_token_count", 0) or 0,
        )
