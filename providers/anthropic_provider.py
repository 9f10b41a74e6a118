"""
Anthropic vision provider: Claude models via the messages API.
"""
from __future__ import annotations

import base64
import time
import logging

import anthropic

from errors import InvalidInput
from providers.base import (
    SYSTEM_PROMPT, USER_PROMPT,
    RawDetectionResponse, VisionProvider,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-sonnet-20241022"

# Claude accepts only these media types for base64 image blocks
_SUPPORTED_MEDIA = {"image/jpeg", "image/png", "image/gif", "image/webp"}


class AnthropicProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.name = "anthropic"
        self.model_id = model
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    async def detect_raw(self, image_bytes: bytes, mime_type: str) -> RawDetectionResponse:
        if mime_type not in _SUPPORTED_MEDIA:
            raise InvalidInput(f"[{self.full_name}] unsupported media type {mime_type}")

        b64 = base64.b64encode(image_bytes).decode()
        t0 = time.monotonic()

        message = await self._client.messages.create(
            model=self.model_id,
            max_tokens=4096,
            temperature=0,
            system=SYSTEM_PROMPT,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": mime_type,
                                "data": b64,
                            },
                        },
                        {"type": "text", "text": USER_PROMPT},
                    ],
                }
            ],
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )

        return RawDetectionResponse(
            provider_name=self.full_name,
            text=text,
            latency_ms=latency_ms,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )
