"""Single-flight coalescing for async operations.

While an operation for a key is in progress, later callers for the same key
await the pending result instead of starting a duplicate. Once it settles
the key is free again; a failure propagates to every waiter and is not
cached.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable

log = logging.getLogger("coherence.flight")


class SingleFlight:

    def __init__(self):
        self._pending: Dict[Hashable, asyncio.Future] = {}
        self.coalesced = 0

    def in_flight(self, key: Hashable) -> bool:
        return key in self._pending

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        pending = self._pending.get(key)
        if pending is not None:
            self.coalesced += 1
            log.debug(f"Joining in-flight operation for {key!r}")
            return await asyncio.shield(pending)

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = fut
        try:
            result = await factory()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as exc:
            fut.set_exception(exc)
            # Mark retrieved so an unawaited failure does not warn
            fut.exception()
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            self._pending.pop(key, None)
