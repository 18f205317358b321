"""CLI runtime context — bridges sync CLI to the async governance runtime."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Coroutine

from amendgov.config import GovSettings, settings
from amendgov.runtime import Governance


class GovContext:
    """Singleton context that holds the governance runtime for CLI commands."""

    _instance: GovContext | None = None

    def __init__(self, gov_settings: GovSettings | None = None) -> None:
        self.settings = gov_settings or settings
        self.governance = Governance.open(self.settings)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Governance]:
        """Open the store for one command and close it afterwards."""
        await self.governance.initialize()
        try:
            yield self.governance
        finally:
            await self.governance.close()

    @classmethod
    def get(cls) -> GovContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside an event loop (embedded use); run on a worker thread
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)
