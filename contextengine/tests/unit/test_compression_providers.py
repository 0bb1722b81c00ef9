from __future__ import annotations

import pytest

from contextengine.core.errors import ProviderConfigError
from contextengine.providers.compression.factory import get_compressor
from contextengine.providers.compression.fake import FakeCompressor
from contextengine.providers.compression.gemini_vertex import GeminiVertexCompressor


def test_factory_defaults_to_fake(monkeypatch) -> None:
    monkeypatch.setenv("COMPRESSION_PROVIDER", "fake")
    assert isinstance(get_compressor(), FakeCompressor)


def test_factory_selects_vertex(monkeypatch) -> None:
    monkeypatch.setenv("COMPRESSION_PROVIDER", "gemini_vertex")
    assert isinstance(get_compressor(), GeminiVertexCompressor)


async def test_vertex_requires_project_and_location(monkeypatch) -> None:
    monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "")
    monkeypatch.setenv("GOOGLE_CLOUD_LOCATION", "")
    compressor = GeminiVertexCompressor(model_name="gemini-test")
    with pytest.raises(ProviderConfigError) as excinfo:
        await compressor.compress("text", "standard", target_tokens=10)
    assert "GOOGLE_CLOUD_PROJECT" in str(excinfo.value)
    assert "GOOGLE_CLOUD_LOCATION" in str(excinfo.value)


async def test_fake_keeps_whole_lines_within_budget() -> None:
    compressor = FakeCompressor()
    text = "first line\n\nsecond line is longer\nthird"
    result = await compressor.compress(text, "critical", target_tokens=5)
    assert result == "first line"
    assert compressor.calls == [("critical", 5)]
