from __future__ import annotations

from contextengine.core.config import get_settings
from contextengine.providers.compression.base import Compressor
from contextengine.providers.compression.fake import FakeCompressor
from contextengine.providers.compression.gemini_vertex import GeminiVertexCompressor


def get_compressor() -> Compressor:
    settings = get_settings()
    provider = (settings.compression_provider or "fake").lower()

    if provider == "fake":
        return FakeCompressor()
    return GeminiVertexCompressor()
