"""
Capstan transport adapters.

Built-in transports::

    inprocess -- Python callables bound with :meth:`InProcessAdapter.bind`.
    http      -- Remote providers over HTTP/JSON and NDJSON streams (httpx).

Plugins add transports with :func:`register_transport`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Type

from capstan.adapters.base import TransportAdapter
from capstan.adapters.http import HttpAdapter
from capstan.adapters.inprocess import InProcessAdapter
from capstan.errors import ConfigError

logger = logging.getLogger("Capstan.Adapters")

_TRANSPORTS: Dict[str, Type[TransportAdapter]] = {
    "inprocess": InProcessAdapter,
    "http": HttpAdapter,
}


def register_transport(name: str, cls: Type[TransportAdapter]) -> None:
    """Register an adapter class under *name* (case-insensitive).

    Replaces any previously registered transport with the same name.
    """
    _TRANSPORTS[name.lower()] = cls
    logger.debug("Transport registered: %s -> %s", name, cls.__name__)


def available_transports() -> List[str]:
    return sorted(_TRANSPORTS)


def create_adapter(provider_config: Dict[str, Any]) -> TransportAdapter:
    """Instantiate the adapter for one ``providers`` config entry.

    Raises:
        ConfigError: If the entry has no id or names an unknown transport.
    """
    provider_id = provider_config.get("id")
    if not provider_id:
        raise ConfigError("Provider entry is missing 'id'")
    transport = str(provider_config.get("transport", "inprocess")).lower()
    cls = _TRANSPORTS.get(transport)
    if cls is None:
        raise ConfigError(
            f"Provider '{provider_id}' uses unknown transport '{transport}'. "
            f"Available: {available_transports()}"
        )
    return cls(provider_id, provider_config)


__all__ = [
    "TransportAdapter",
    "InProcessAdapter",
    "HttpAdapter",
    "create_adapter",
    "register_transport",
    "available_transports",
]
