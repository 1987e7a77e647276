"""
In-process transport adapter.

Tools living in the broker's own process are bound explicitly::

    adapter = InProcessAdapter("local")
    adapter.bind("math.add", lambda a, b: a + b)

    async def tokens(prompt):
        for word in prompt.split():
            yield word

    adapter.bind("text.tokens", tokens)

The payload is passed as keyword arguments.  Plain functions run in a
worker thread so they cannot stall the event loop; coroutine functions are
awaited; (async) generator functions are streamed.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from capstan.adapters.base import TransportAdapter
from capstan.capabilities import Capability
from capstan.errors import AdapterError, BrokerError, InvocationTimeout

_EXHAUSTED = object()


def _next_or_sentinel(iterator):
    return next(iterator, _EXHAUSTED)


class InProcessAdapter(TransportAdapter):
    """Call Python functions bound to capability names."""

    transport = "inprocess"

    def __init__(self, provider: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(provider, config)
        self._handlers: Dict[str, Callable[..., Any]] = {}

    def bind(self, name: str, fn: Callable[..., Any]) -> None:
        """Bind *fn* as the implementation of capability *name*.

        Replaces any previous binding.
        """
        self._handlers[name] = fn
        self.logger.debug("Bound %s -> %s", name, getattr(fn, "__name__", fn))

    def unbind(self, name: str) -> None:
        self._handlers.pop(name, None)

    @property
    def bound(self) -> List[str]:
        return sorted(self._handlers)

    def _handler(self, capability: Capability) -> Callable[..., Any]:
        fn = self._handlers.get(capability.name)
        if fn is None:
            raise AdapterError(f"no in-process handler bound for '{capability.name}'")
        return fn

    async def invoke(self, capability: Capability, payload: Dict[str, Any], correlation_id: str) -> Any:
        fn = self._handler(capability)
        if inspect.isasyncgenfunction(fn) or inspect.isgeneratorfunction(fn):
            return [chunk async for chunk in self.stream(capability, payload, correlation_id)]
        self._begin(correlation_id)
        try:
            if inspect.iscoroutinefunction(fn):
                return await fn(**payload)
            return await asyncio.to_thread(fn, **payload)
        except BrokerError:
            raise
        except asyncio.TimeoutError as exc:
            raise InvocationTimeout(f"'{capability.name}' timed out internally") from exc
        except Exception as exc:
            raise AdapterError(f"'{capability.name}' raised {exc!r}") from exc
        finally:
            self._end(correlation_id)

    async def stream(self, capability: Capability, payload: Dict[str, Any], correlation_id: str) -> AsyncIterator[Any]:
        fn = self._handler(capability)
        cancelled = self._begin(correlation_id)
        try:
            if inspect.isasyncgenfunction(fn):
                agen = fn(**payload)
                try:
                    async for chunk in agen:
                        if cancelled.is_set():
                            break
                        yield chunk
                finally:
                    await agen.aclose()
            elif inspect.isgeneratorfunction(fn):
                iterator = fn(**payload)
                try:
                    while not cancelled.is_set():
                        chunk = await asyncio.to_thread(_next_or_sentinel, iterator)
                        if chunk is _EXHAUSTED:
                            break
                        yield chunk
                finally:
                    try:
                        iterator.close()
                    except ValueError:
                        # Generator is still running in the worker thread; it finishes there.
                        self.logger.debug("Generator for %s still executing at close", correlation_id)
            elif inspect.iscoroutinefunction(fn):
                yield await fn(**payload)
            else:
                yield await asyncio.to_thread(fn, **payload)
        except BrokerError:
            raise
        except asyncio.TimeoutError as exc:
            raise InvocationTimeout(f"'{capability.name}' timed out internally") from exc
        except Exception as exc:
            raise AdapterError(f"'{capability.name}' stream raised {exc!r}") from exc
        finally:
            self._end(correlation_id)
