"""
Tests for providers/manager.py.

Covers:
  - validate_image(): empty bytes, unsupported / missing MIME type, size limit
  - detect(): normalised output, timeout, provider exceptions, bad output
  - build_provider(): key lookup via key_store, unknown provider names
"""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest

import config
from errors import DetectionUnavailable, InvalidInput
from providers.manager import build_provider, detect, validate_image

JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


# ── validate_image ────────────────────────────────────────────────────────────

class TestValidateImage:
    def test_accepts_jpeg(self):
        validate_image(JPEG, "image/jpeg")

    def test_mime_type_case_insensitive(self):
        validate_image(JPEG, "IMAGE/PNG")

    def test_empty_bytes_rejected(self):
        with pytest.raises(InvalidInput, match="empty"):
            validate_image(b"", "image/jpeg")

    def test_non_image_mime_rejected(self):
        with pytest.raises(InvalidInput, match="Unsupported mimeType"):
            validate_image(JPEG, "application/pdf")

    def test_missing_mime_rejected(self):
        with pytest.raises(InvalidInput):
            validate_image(JPEG, "")

    def test_oversized_rejected(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_IMAGE_BYTES", 4)
        with pytest.raises(InvalidInput, match="limit"):
            validate_image(JPEG, "image/jpeg")


# ── detect ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDetect:
    async def test_returns_normalised_detections(self, make_provider):
        provider = make_provider(json.dumps([
            {"label": "Oat Milk", "box_2d": [10, 20, 30, 40]},
            {"label": "Soy Milk", "box_2d": [50, 60, 70, 80]},
        ]))
        result = await detect(provider, JPEG, "image/jpeg")
        assert [d.label for d in result] == ["Oat Milk", "Soy Milk"]
        assert result[1].box.to_dict() == {"y0": 50, "x0": 60, "y1": 70, "x1": 80}
        assert provider.calls == [(JPEG, "image/jpeg")]

    async def test_drops_malformed_item(self, make_provider):
        provider = make_provider(json.dumps([
            {"label": "A", "box_2d": [1, 2, 3, 4]},
            {"label": "B", "box_2d": [1, 2, 3]},
            {"label": "C", "box_2d": [5, 6, 7, 8]},
        ]))
        result = await detect(provider, JPEG, "image/jpeg")
        assert len(result) == 2

    async def test_invalid_input_never_calls_provider(self, make_provider):
        provider = make_provider("[]")
        with pytest.raises(InvalidInput):
            await detect(provider, b"", "image/jpeg")
        assert provider.calls == []

    async def test_timeout_is_detection_unavailable(self, make_provider):
        provider = make_provider("[]", delay=1.0)
        with pytest.raises(DetectionUnavailable, match="timed out"):
            await detect(provider, JPEG, "image/jpeg", timeout=0.01)

    async def test_provider_exception_is_detection_unavailable(self, make_provider):
        provider = make_provider(exc=ConnectionError("model unreachable"))
        with pytest.raises(DetectionUnavailable, match="model unreachable"):
            await detect(provider, JPEG, "image/jpeg")

    async def test_garbage_output_is_detection_unavailable(self, make_provider):
        provider = make_provider("Sorry, I can't help with that.")
        with pytest.raises(DetectionUnavailable):
            await detect(provider, JPEG, "image/jpeg")

    async def test_empty_output_is_detection_unavailable(self, make_provider):
        provider = make_provider("")
        with pytest.raises(DetectionUnavailable):
            await detect(provider, JPEG, "image/jpeg")

    async def test_pipeline_errors_from_provider_pass_through(self, make_provider):
        provider = make_provider(exc=InvalidInput("bad crop"))
        with pytest.raises(InvalidInput, match="bad crop"):
            await detect(provider, JPEG, "image/jpeg")

    async def test_heic_on_anthropic_is_invalid_input(self):
        from providers.anthropic_provider import AnthropicProvider
        with patch("providers.anthropic_provider.anthropic.AsyncAnthropic") as client_cls:
            provider = AnthropicProvider(api_key="sk-ant")
        with pytest.raises(InvalidInput, match="unsupported media type"):
            await detect(provider, JPEG, "image/heic")
        client_cls.return_value.messages.create.assert_not_called()


# ── build_provider ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestBuildProvider:
    async def test_missing_key_raises_detection_unavailable(self, store, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        with pytest.raises(DetectionUnavailable, match="GOOGLE_API_KEY"):
            await build_provider(store, "google")

    async def test_unknown_provider_raises(self, store):
        with pytest.raises(ValueError, match="Unknown vision provider"):
            await build_provider(store, "nonexistent")

    async def test_google_built_with_db_key(self, store, monkeypatch):
        monkeypatch.setattr(config, "VISION_MODEL", None)
        await store.set_api_key("google_api_key", "g-db-key")
        with patch("providers.gemini_provider.genai.Client") as client_cls:
            provider = await build_provider(store, "google")
        client_cls.assert_called_once_with(api_key="g-db-key")
        assert provider.full_name == "google/gemini-2.5-flash"

    async def test_model_override(self, store, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        with patch("providers.openai_provider.AsyncOpenAI"):
            provider = await build_provider(store, "openai", model="gpt-4o-mini")
        assert provider.full_name == "openai/gpt-4o-mini"

    async def test_anthropic_built_from_env(self, store, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
        with patch("providers.anthropic_provider.anthropic.AsyncAnthropic"):
            provider = await build_provider(store, "anthropic")
        assert provider.name == "anthropic"
