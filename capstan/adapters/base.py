"""
Base class for transport adapters.

An adapter binds one provider's wire protocol to the broker's internal
call shape.  Whatever the transport, an adapter must:

    * return the output of a single-shot call from :meth:`invoke`;
    * yield partial outputs from :meth:`stream`;
    * normalise its native failures (connection reset, malformed response,
      timeout) into :mod:`capstan.errors` before they reach the dispatcher;
    * best-effort abort downstream work on :meth:`cancel`.

The dispatcher enforces deadlines and cancels the calling task; adapters
see that as :class:`asyncio.CancelledError` and must let it propagate.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional

from capstan.capabilities import Capability

logger = logging.getLogger("Capstan.Adapters")

# Interrupted correlation ids remembered for a later cancel().
_ORPHAN_LIMIT = 1024


class TransportAdapter(ABC):
    """Abstract base for all transport adapters."""

    #: Transport name used in provider config (``transport: http``).
    transport: str = "base"

    def __init__(self, provider: str, config: Optional[Dict[str, Any]] = None):
        self.provider = provider
        self.config: Dict[str, Any] = dict(config or {})
        self.logger = logging.getLogger(f"Capstan.Adapter.{self.transport}")
        self._cancelled: Dict[str, asyncio.Event] = {}
        self._orphaned: Dict[str, None] = {}

    @abstractmethod
    async def invoke(self, capability: Capability, payload: Dict[str, Any], correlation_id: str) -> Any:
        """Perform one request/response call and return its output.

        Raises:
            capstan.errors.AdapterError:       Downstream failure of any kind.
            capstan.errors.InvocationTimeout:  Transport-level timeout.
        """
        ...

    @abstractmethod
    def stream(self, capability: Capability, payload: Dict[str, Any], correlation_id: str) -> AsyncIterator[Any]:
        """Return an async iterator of partial outputs.

        Implementations are async generators; closing the iterator releases
        the downstream resources.
        """
        ...

    async def cancel(self, correlation_id: str) -> bool:
        """Signal cancellation of *correlation_id*.

        Returns True if the adapter had something in flight to abort, or if
        the call was already torn down by task cancellation (caller gone,
        deadline hit) and the provider has not been told yet.
        """
        orphaned = correlation_id in self._orphaned
        self._orphaned.pop(correlation_id, None)
        event = self._cancelled.get(correlation_id)
        if event is None:
            return orphaned
        event.set()
        return True

    async def close(self) -> None:
        """Release transport resources (connection pools, sockets)."""

    def health(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "transport": self.transport,
            "in_flight": len(self._cancelled),
        }

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _begin(self, correlation_id: str) -> asyncio.Event:
        event = asyncio.Event()
        self._cancelled[correlation_id] = event
        return event

    def _end(self, correlation_id: str) -> None:
        self._cancelled.pop(correlation_id, None)

    def _interrupted(self, correlation_id: str) -> None:
        """Record that *correlation_id* was cut short by task cancellation.

        Nothing is recorded when :meth:`cancel` already signalled the call.
        """
        event = self._cancelled.get(correlation_id)
        if event is not None and event.is_set():
            return
        self._orphaned[correlation_id] = None
        while len(self._orphaned) > _ORPHAN_LIMIT:
            self._orphaned.pop(next(iter(self._orphaned)))
