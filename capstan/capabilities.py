"""
Capstan Capability Registry.

Holds every tool and resource the connected providers expose.  A
:class:`Capability` is immutable once registered for a given version; it is
only removed by explicit deregistration.

The registry is read-mostly: registration happens at provider startup while
``lookup`` sits on the hot path of every invocation.  Writers build a new
snapshot under a lock and swap the reference; readers just dereference the
current snapshot and never lock.

Usage::

    from capstan.capabilities import Capability, CapabilityRegistry

    registry = CapabilityRegistry()
    registry.register(Capability(name="weather.lookup", provider="weather",
                                 required_scope=frozenset({Permission.READ})))
    cap = registry.lookup("weather.lookup")
    for cap in registry.list(provider="weather"):
        print(cap.name)
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple

from capstan.errors import DuplicateCapability, UnknownCapability
from capstan.rbac import Permission, to_strings

logger = logging.getLogger("Capstan.Registry")


class SideEffect(str, Enum):
    """Whether invoking a capability changes state somewhere."""

    PURE = "pure"
    MUTATING = "mutating"


class CapabilityKind(str, Enum):
    TOOL = "tool"
    RESOURCE = "resource"


@dataclass(frozen=True)
class Capability:
    """Descriptor of one invocable tool or addressable resource.

    Attributes:
        name:            Unique capability name (e.g. ``weather.lookup``).
        provider:        Identifier of the owning provider.
        version:         Version string; name+version is the registry key.
        kind:            Tool or resource.
        description:     Human-readable summary for discovery.
        input_schema:    JSON Schema the invocation payload must satisfy.
        output_schema:   JSON Schema of the result (informational).
        required_scope:  Permission tokens an identity's role must hold.
        side_effect:     ``pure`` capabilities may be retried by the broker.
    """

    name: str
    provider: str
    version: str = "1.0.0"
    kind: CapabilityKind = CapabilityKind.TOOL
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)
    output_schema: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)
    required_scope: FrozenSet[Permission] = frozenset()
    side_effect: SideEffect = SideEffect.PURE

    def __post_init__(self):
        if not self.name:
            raise ValueError("Capability name is required")
        if not self.provider:
            raise ValueError(f"Capability '{self.name}' has no provider")
        # Freeze mutable inputs so a registered capability cannot change underneath readers.
        object.__setattr__(self, "required_scope", frozenset(self.required_scope))
        object.__setattr__(self, "input_schema", MappingProxyType(dict(self.input_schema)))
        object.__setattr__(self, "output_schema", MappingProxyType(dict(self.output_schema)))

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.version)

    @property
    def is_pure(self) -> bool:
        return self.side_effect == SideEffect.PURE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Capability:
        """Build a capability from a config/manifest entry.

        Raises:
            capstan.errors.ConfigError: On unknown permission tokens.
            ValueError: On a missing name/provider or an unknown enum value.
        """
        return cls(
            name=data["name"],
            provider=data.get("provider", ""),
            version=str(data.get("version", "1.0.0")),
            kind=CapabilityKind(data.get("kind", "tool")),
            description=data.get("description", ""),
            input_schema=data.get("input_schema") or {},
            output_schema=data.get("output_schema") or {},
            required_scope=Permission.parse_many(data.get("required_scope", [])),
            side_effect=SideEffect(data.get("side_effect", "pure")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the discovery (manifest) shape."""
        return {
            "name": self.name,
            "version": self.version,
            "provider": self.provider,
            "kind": self.kind.value,
            "description": self.description,
            "input_schema": dict(self.input_schema),
            "output_schema": dict(self.output_schema),
            "required_scope": to_strings(self.required_scope),
            "side_effect": self.side_effect.value,
        }


def version_key(version: str) -> Tuple:
    """Sort key that orders ``1.10.0`` after ``1.9.0``."""
    parts = re.split(r"[.\-+]", version)
    return tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in parts)


# name -> {version -> Capability}
_Snapshot = Mapping[str, Mapping[str, Capability]]


class CapabilityQuery:
    """Lazy, restartable view over the registry.

    Each iteration walks the snapshot that is current when iteration
    starts, so re-iterating picks up later registrations.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        provider: Optional[str] = None,
        scope: Optional[Iterable[Permission]] = None,
        latest_only: bool = True,
    ):
        self._registry = registry
        self._provider = provider
        self._scope = frozenset(scope) if scope is not None else None
        self._latest_only = latest_only

    def _matches(self, cap: Capability) -> bool:
        if self._provider is not None and cap.provider != self._provider:
            return False
        if self._scope is not None and not cap.required_scope <= self._scope:
            return False
        return True

    def __iter__(self) -> Iterator[Capability]:
        snapshot = self._registry._snapshot
        for name in sorted(snapshot):
            versions = snapshot[name]
            ordered = sorted(versions, key=version_key, reverse=True)
            if self._latest_only:
                ordered = ordered[:1]
            for version in ordered:
                cap = versions[version]
                if self._matches(cap):
                    yield cap

    def names(self) -> List[str]:
        return [cap.name for cap in self]


class CapabilityRegistry:
    """Copy-on-write registry of capabilities keyed by name and version."""

    def __init__(self, capabilities: Optional[Iterable[Capability]] = None):
        self._write_lock = threading.Lock()
        self._snapshot: _Snapshot = MappingProxyType({})
        if capabilities:
            self.register_many(capabilities)

    # ------------------------------------------------------------------
    # Registration (provider startup; rare)
    # ------------------------------------------------------------------

    def register(self, capability: Capability) -> None:
        """Register a capability.

        Raises:
            DuplicateCapability: If the same name+version is already present.
        """
        self.register_many([capability])

    def register_many(self, capabilities: Iterable[Capability]) -> None:
        """Register several capabilities as one atomic snapshot swap.

        Either all are registered or none are.
        """
        capabilities = list(capabilities)
        with self._write_lock:
            draft: Dict[str, Dict[str, Capability]] = {
                name: dict(versions) for name, versions in self._snapshot.items()
            }
            for cap in capabilities:
                versions = draft.setdefault(cap.name, {})
                if cap.version in versions:
                    raise DuplicateCapability(f"{cap.name}@{cap.version} already registered")
                versions[cap.version] = cap
            self._swap(draft)
        for cap in capabilities:
            logger.debug("Capability registered: %s@%s (provider=%s)", cap.name, cap.version, cap.provider)

    def deregister(self, name: str, version: Optional[str] = None) -> None:
        """Remove one version, or every version when *version* is ``None``.

        Raises:
            UnknownCapability: If nothing matches.
        """
        with self._write_lock:
            draft = {n: dict(v) for n, v in self._snapshot.items()}
            versions = draft.get(name)
            if not versions or (version is not None and version not in versions):
                raise UnknownCapability(f"{name}@{version or '*'} is not registered")
            if version is None:
                del draft[name]
            else:
                del versions[version]
                if not versions:
                    del draft[name]
            self._swap(draft)
        logger.info("Capability deregistered: %s@%s", name, version or "*")

    def deregister_provider(self, provider: str) -> int:
        """Remove every capability owned by *provider*; returns how many were removed."""
        removed = 0
        with self._write_lock:
            draft: Dict[str, Dict[str, Capability]] = {}
            for name, versions in self._snapshot.items():
                kept = {v: c for v, c in versions.items() if c.provider != provider}
                removed += len(versions) - len(kept)
                if kept:
                    draft[name] = kept
            self._swap(draft)
        return removed

    def _swap(self, draft: Dict[str, Dict[str, Capability]]) -> None:
        """Publish *draft* as the new snapshot (called under the write lock)."""
        self._snapshot = MappingProxyType(
            {name: MappingProxyType(versions) for name, versions in draft.items()}
        )

    # ------------------------------------------------------------------
    # Lookup (hot path; lock-free)
    # ------------------------------------------------------------------

    def lookup(self, name: str, version: Optional[str] = None) -> Capability:
        """Return the capability, latest version unless *version* is given.

        Raises:
            UnknownCapability: If absent.
        """
        versions = self._snapshot.get(name)
        if not versions:
            raise UnknownCapability(f"'{name}' is not registered")
        if version is not None:
            cap = versions.get(version)
            if cap is None:
                raise UnknownCapability(f"'{name}@{version}' is not registered")
            return cap
        return versions[max(versions, key=version_key)]

    def has(self, name: str) -> bool:
        return name in self._snapshot

    def list(
        self,
        provider: Optional[str] = None,
        scope: Optional[Iterable[Permission]] = None,
        latest_only: bool = True,
    ) -> CapabilityQuery:
        """Discovery query filtered by provider and/or permission scope."""
        return CapabilityQuery(self, provider=provider, scope=scope, latest_only=latest_only)

    def providers(self) -> List[str]:
        """Return sorted provider ids that own at least one capability."""
        return sorted({cap.provider for versions in self._snapshot.values() for cap in versions.values()})

    @property
    def names(self) -> List[str]:
        return sorted(self._snapshot)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {cap.name: cap.to_dict() for cap in self.list()}

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, item: str) -> bool:
        return self.has(item)
