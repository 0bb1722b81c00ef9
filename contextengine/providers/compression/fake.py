from __future__ import annotations


class FakeCompressor:
    def __init__(self, marker: str = "") -> None:
        # Deterministic output keeps tests and local runs free of external calls.
        self._marker = marker
        self.calls: list[tuple[str, int]] = []

    async def compress(self, text: str, tier: str, *, target_tokens: int) -> str:
        self.calls.append((tier, target_tokens))
        # Keep whole lines until the character budget is spent.
        budget = max(target_tokens, 1) * 4
        kept: list[str] = []
        used = 0
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            if used + len(stripped) + 1 > budget:
                break
            kept.append(stripped)
            used += len(stripped) + 1
        if not kept:
            kept.append(text.strip()[: max(budget - 1, 1)])
        return f"{self._marker}{chr(10).join(kept)}"
