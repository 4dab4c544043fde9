"""Append-only free-text knowledge base shared by all tasks of a run."""

from __future__ import annotations

import asyncio


class KnowledgeBase:
    def __init__(self, initial: str = "") -> None:
        self._text = initial
        self._lock = asyncio.Lock()

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)

    async def append_result(self, title: str, result: str) -> None:
        async with self._lock:
            self._text += f"\n\nTask: {title}\nResult: {result}"

    def excerpt(self, limit: int) -> str:
        """Leading slice handed to plan/execute calls."""
        return self._text[: max(limit, 0)]

    def clear(self) -> None:
        self._text = ""
