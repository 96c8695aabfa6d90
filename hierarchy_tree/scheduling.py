"""Cooperative scheduling helpers.

Grouping very wide hierarchy levels is CPU bound. These helpers give control
back to the event loop now and then so other tasks stay responsive.
"""

import asyncio
import time

DEFAULT_RELEASE_BUDGET_MS = 40.0
DEFAULT_RELEASE_ITEMS_COUNT = 500


class MainThreadReleaser:
    """Yields to the event loop once a time budget has passed since the last yield.

    Usage:
        release = MainThreadReleaser(budget_ms=40)
        for node in nodes:
            await release()
            ...
    """

    def __init__(self, budget_ms: float = DEFAULT_RELEASE_BUDGET_MS):
        """Initialize the releaser.

        Args:
            budget_ms: Milliseconds of uninterrupted work allowed between yields
        """
        self._budget_s = budget_ms / 1000.0
        self._last_release = time.monotonic()
        self.release_count = 0

    async def __call__(self) -> None:
        now = time.monotonic()
        if now - self._last_release < self._budget_s:
            return
        await asyncio.sleep(0)
        self._last_release = time.monotonic()
        self.release_count += 1


async def release_on_items_count(index: int, every: int = DEFAULT_RELEASE_ITEMS_COUNT) -> None:
    """Yield to the event loop on every ``every``-th item."""
    if index > 0 and index % every == 0:
        await asyncio.sleep(0)
