# shopguard/core/single_flight.py
"""
In-flight request registry and component lifetime.

``InFlightRegistry`` makes "at most one in-flight operation per key" an
inspectable invariant: a second claim for a busy key is refused rather
than queued, and the caller decides what a refused claim means (usually
"return the current cache"). ``SharedFlight`` is the joining variant:
late callers await the running operation and get its result.

``Lifetime`` replaces a mounted flag. Work started under one generation
must not write local state once the lifetime was closed or advanced
(unmount, user switch).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Hashable, List, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InFlightRegistry:
    """Keyed single-flight guard for cooperative asyncio code"""

    def __init__(self, name: str = "inflight"):
        self.name = name
        self._active: Set[Hashable] = set()
        self._suppressed = 0

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._active

    def active_keys(self) -> List[Hashable]:
        return list(self._active)

    @asynccontextmanager
    async def claim(self, key: Hashable) -> AsyncIterator[bool]:
        """
        Claim ``key`` for the duration of the block.

        Yields True when the claim was acquired, False when another
        operation already holds it. The key is released on exit even if
        the body raises or is cancelled.
        """
        if key in self._active:
            self._suppressed += 1
            logger.debug(f"⏸️ [{self.name}] {key} already in flight, suppressing")
            yield False
            return

        self._active.add(key)
        try:
            yield True
        finally:
            self._active.discard(key)

    def get_metrics(self) -> Dict[str, int]:
        return {
            "in_flight": len(self._active),
            "suppressed": self._suppressed,
        }


class Lifetime:
    """
    Mount state plus a generation counter.

    ``token()`` captures the current generation; ``is_current(token)``
    tells whether a late response may still be applied.
    """

    def __init__(self, mounted: bool = True):
        self._mounted = mounted
        self._generation = 0

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def generation(self) -> int:
        return self._generation

    def mount(self) -> None:
        if not self._mounted:
            self._mounted = True
            self._generation += 1

    def unmount(self) -> None:
        self._mounted = False
        self._generation += 1

    def advance(self) -> None:
        """Invalidate in-flight work without unmounting (e.g. user switched)"""
        self._generation += 1

    def token(self) -> int:
        return self._generation

    def is_current(self, token: int) -> bool:
        return self._mounted and token == self._generation


class SharedFlight:
    """
    Keyed single-flight where concurrent callers share one result.

    The first caller for a key starts the work; callers arriving while it
    runs await the same task and see the same result or exception.
    """

    def __init__(self, name: str = "shared"):
        self.name = name
        self._tasks: Dict[Hashable, "asyncio.Task[Any]"] = {}
        self._joined = 0

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._tasks

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._tasks.get(key)
        if task is not None:
            self._joined += 1
            logger.debug(f"🔗 [{self.name}] joining in-flight {key}")
            return await asyncio.shield(task)

        task = asyncio.ensure_future(factory())
        self._tasks[key] = task

        def release(finished: "asyncio.Task[Any]") -> None:
            if self._tasks.get(key) is finished:
                del self._tasks[key]

        task.add_done_callback(release)
        return await asyncio.shield(task)

    def get_metrics(self) -> Dict[str, int]:
        return {"in_flight": len(self._tasks), "joined": self._joined}
