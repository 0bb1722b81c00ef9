from __future__ import annotations

import asyncio
import logging

from contextengine.core.config import get_settings
from contextengine.core.errors import CompressionError, ProviderConfigError

logger = logging.getLogger(__name__)


_PROMPT = (
    "Compress the following business context to roughly {target} tokens for the {tier} tier. "
    "Keep names, identifiers, reference codes in square brackets, dates and amounts. "
    "Return plain markdown only.\n\n{text}"
)


class GeminiVertexCompressor:
    def __init__(self, model_name: str | None = None) -> None:
        self._settings = get_settings()
        self._model_name = model_name or self._settings.compression_model

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._model_name
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("COMPRESSION_MODEL")
        if missing:
            raise ProviderConfigError(
                f"Vertex config missing: set {', '.join(missing)} in .env."
            )
        return project, location, model

    def _generate(self, project: str, location: str, model_name: str, prompt: str, max_tokens: int) -> str:
        try:
            from vertexai import init
            from vertexai.generative_models import GenerationConfig, GenerativeModel
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        init(project=project, location=location)
        model = GenerativeModel(model_name)
        response = model.generate_content(
            prompt,
            generation_config=GenerationConfig(max_output_tokens=max_tokens, temperature=0.0),
        )
        return getattr(response, "text", "") or ""

    async def compress(self, text: str, tier: str, *, target_tokens: int) -> str:
        project, location, model_name = self._validate_config()
        prompt = _PROMPT.format(target=target_tokens, tier=tier, text=text)
        try:
            logger.info("vertex_compress_start model=%s tier=%s target=%s", model_name, tier, target_tokens)
            # The SDK call blocks, so keep it off the event loop.
            return await asyncio.to_thread(
                self._generate, project, location, model_name, prompt, max(target_tokens * 5, 32)
            )
        except ProviderConfigError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("vertex_compress_error model=%s tier=%s", model_name, tier)
            raise CompressionError("Vertex AI compression request failed.") from exc
