from __future__ import annotations

import asyncio
import inspect
import time


async def wait_until(predicate, timeout: float, interval: float = 0.2):
    """Waits for a predicate (plain or async) to return a truthy value."""

    async def evaluate():
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        return result

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = await evaluate()
        if result:
            return result
        await asyncio.sleep(interval)
    return await evaluate()
