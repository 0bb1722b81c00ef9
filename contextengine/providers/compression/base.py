from __future__ import annotations

from typing import Protocol


class Compressor(Protocol):
    async def compress(self, text: str, tier: str, *, target_tokens: int) -> str:
        ...
