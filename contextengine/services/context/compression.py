from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from contextengine.providers.compression.base import Compressor
from contextengine.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
# Text within this factor of the target is close enough to skip compression.
WITHIN_BUDGET_FACTOR = 1.2
# Fallback output above this factor gets a second, tighter truncation.
FALLBACK_OVERRUN_FACTOR = 1.3
TRUNCATION_MARKER = "[...]"
MIN_PARAGRAPH_PRESERVATION = 0.7
MIN_LINE_PRESERVATION = 0.8
MIN_WORD_PRESERVATION = 0.9


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def smart_truncate(content: str, max_chars: int) -> str:
    """Cut ``content`` to about ``max_chars`` on a paragraph, line or word boundary.

    The cut point must keep most of the allowed text; otherwise the next finer
    boundary is tried, ending with a hard cut. A ``[...]`` marker is appended.
    """
    if len(content) <= max_chars:
        return content
    max_chars = max(max_chars, 0)
    truncated = content[:max_chars]

    paragraph = truncated.rfind("\n\n")
    if paragraph > max_chars * MIN_PARAGRAPH_PRESERVATION:
        return truncated[:paragraph] + "\n\n" + TRUNCATION_MARKER
    line = truncated.rfind("\n")
    if line > max_chars * MIN_LINE_PRESERVATION:
        return truncated[:line] + "\n" + TRUNCATION_MARKER
    space = truncated.rfind(" ")
    if space > max_chars * MIN_WORD_PRESERVATION:
        return truncated[:space] + " " + TRUNCATION_MARKER
    return truncated + TRUNCATION_MARKER


def fallback_truncate(content: str, target_tokens: int) -> str:
    truncated = smart_truncate(content, math.ceil(target_tokens * CHARS_PER_TOKEN * WITHIN_BUDGET_FACTOR))
    if estimate_tokens(truncated) > target_tokens * FALLBACK_OVERRUN_FACTOR:
        logger.warning(
            "context_fallback_over_budget tokens=%s target=%s",
            estimate_tokens(truncated),
            target_tokens,
        )
        return smart_truncate(truncated, math.ceil(target_tokens * 3))
    return truncated


def within_budget(text: str, target_tokens: int) -> bool:
    return len(text) / CHARS_PER_TOKEN <= target_tokens * WITHIN_BUDGET_FACTOR


@dataclass(frozen=True)
class CompressionOutcome:
    text: str
    invoked: bool
    fell_back: bool = False


async def compress_to_budget(
    compressor: Compressor,
    text: str,
    tier: str,
    *,
    target_tokens: int,
    policy: RetryPolicy | None = None,
    label: str = "",
) -> CompressionOutcome:
    if within_budget(text, target_tokens):
        return CompressionOutcome(text=text, invoked=False)
    try:
        compressed = await retry_async(
            lambda: compressor.compress(text, tier, target_tokens=target_tokens),
            policy=policy,
            operation="context_compress",
        )
    except Exception as exc:  # noqa: BLE001 - any provider failure degrades to truncation
        logger.warning(
            "context_compression_failed section=%s tier=%s target=%s error=%s",
            label,
            tier,
            target_tokens,
            type(exc).__name__,
        )
        return CompressionOutcome(text=fallback_truncate(text, target_tokens), invoked=True, fell_back=True)
    compressed = (compressed or "").strip()
    if not compressed:
        logger.warning("context_compression_empty section=%s tier=%s", label, tier)
        return CompressionOutcome(text=fallback_truncate(text, target_tokens), invoked=True, fell_back=True)
    return CompressionOutcome(text=compressed, invoked=True)
