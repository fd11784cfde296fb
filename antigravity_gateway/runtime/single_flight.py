from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Collapses concurrent calls onto one in-flight execution.

    The first caller runs the operation. Callers arriving before it settles
    await the same future and observe the identical result or exception.
    """

    def __init__(self) -> None:
        self._inflight: asyncio.Future[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        future = self._inflight
        if future is not None and not future.done():
            return await asyncio.shield(future)

        future = asyncio.get_running_loop().create_future()
        self._inflight = future
        try:
            result = await operation()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Followers may not exist; mark the exception retrieved.
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._inflight is future:
                self._inflight = None
