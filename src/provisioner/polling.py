"""Clock and blocking-call helpers shared by the polling steps.

Every wait in the workflow goes through a Clock so that attempt and timeout
ceilings can be exercised in tests without real wall-clock delay.
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

T = TypeVar("T")

# Fixed interval used by the registration, identity and grant visibility polls
DEFAULT_POLL_INTERVAL_SECONDS = 5


class Clock(Protocol):
    """Source of monotonic time and suspension."""

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Clock backed by time.monotonic and asyncio.sleep."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


SYSTEM_CLOCK = SystemClock()


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking SDK call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
