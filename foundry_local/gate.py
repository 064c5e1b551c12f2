"""Serialization gate: one lifecycle operation at a time, FIFO."""

from __future__ import annotations

import asyncio
import contextvars
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from foundry_local.errors import ManagerClosed

logger = logging.getLogger(__name__)

T = TypeVar("T")

# The gate held by the current task, if any.
_holder: contextvars.ContextVar[Optional["SerializationGate"]] = contextvars.ContextVar(
    "foundry_local_gate_holder", default=None
)


class SerializationGate:
    """Runs operations one at a time in arrival order.

    Release is unconditional (success, exception or cancellation). The gate
    is not reentrant: an operation that calls back into the gate fails
    immediately with RuntimeError rather than deadlocking.
    """

    def __init__(self, name: str = "lifecycle") -> None:
        self.name = name
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def close(self) -> None:
        """Refuse all later and still-queued operations."""
        self._closed = True

    async def run(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        if self._closed:
            raise ManagerClosed()
        if _holder.get() is self:
            raise RuntimeError(
                f"{getattr(operation, '__name__', operation)!s} called while the "
                f"{self.name} gate is held by this task"
            )
        async with self._lock:
            if self._closed:
                raise ManagerClosed()
            token = _holder.set(self)
            try:
                return await operation(*args, **kwargs)
            finally:
                _holder.reset(token)
