"""
Capstan broker facade.

Wires the registry, credential validator, authorization gate, rate limiter,
session manager, transport adapters and dispatcher from one
:class:`~capstan.config.BrokerSettings`, and runs the background
maintenance loop (session sweep, idle rate-bucket collection, status
gauges).

Usage::

    broker = Broker.from_file("broker.yaml")

    @broker.tool("math.add", required_scope=["execute"],
                 input_schema={"type": "object", "required": ["a", "b"]})
    def add(a, b):
        return a + b

    await broker.start()
    result = await broker.dispatcher.negotiate(token, ["math.add"])
    ...
    await broker.close()
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from capstan.adapters import create_adapter
from capstan.adapters.base import TransportAdapter
from capstan.adapters.inprocess import InProcessAdapter
from capstan.capabilities import Capability, CapabilityKind, CapabilityRegistry, SideEffect
from capstan.config import BrokerSettings, load_config
from capstan.credentials import CredentialValidator
from capstan.dispatcher import Dispatcher
from capstan.errors import ConfigError, UnknownCapability
from capstan.metrics import MetricsRegistry, get_metrics
from capstan.ratelimit import RateLimiter
from capstan.rbac import AuthorizationGate, Permission
from capstan.sessions import SessionManager

logger = logging.getLogger("Capstan.Broker")

DEFAULT_LOCAL_PROVIDER = "local"


class Broker:
    """The assembled capability broker.

    Args:
        settings:  Typed settings (defaults: built-in policy, no issuers).
        clock:     Monotonic time source shared by sessions and rate limits.
        metrics:   Metrics registry (defaults to the process singleton).
    """

    def __init__(
        self,
        settings: Optional[BrokerSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.settings = settings or BrokerSettings()
        self.metrics = metrics or get_metrics()
        self.registry = CapabilityRegistry(self.settings.capabilities)
        self.gate = AuthorizationGate(self.settings.policy)
        self.validator = CredentialValidator(self.settings.anchor)
        self.limiter = RateLimiter(self.settings.rate_limit, clock=clock)
        self.sessions = SessionManager(self.registry, self.gate, self.settings.sessions, clock=clock)
        self.dispatcher = Dispatcher(
            self.registry,
            self.validator,
            self.gate,
            self.limiter,
            self.sessions,
            adapters={p["id"]: create_adapter(p) for p in self.settings.providers},
            settings=self.settings.invocation,
            metrics=self.metrics,
        )
        self._declared: Set[Tuple[str, str]] = {c.key for c in self.settings.capabilities}
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._start_time: Optional[float] = None
        logger.info(
            "Broker '%s' ready: %d capabilities, %d provider(s)",
            self.settings.name,
            len(self.registry),
            len(self.dispatcher.adapters),
        )

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]], **kwargs) -> Broker:
        return cls(BrokerSettings.from_config(config), **kwargs)

    @classmethod
    def from_file(cls, path: Optional[str] = None, **kwargs) -> Broker:
        return cls.from_config(load_config(path), **kwargs)

    # ------------------------------------------------------------------
    # Provider registration
    # ------------------------------------------------------------------

    def local_adapter(self, provider: str = DEFAULT_LOCAL_PROVIDER) -> InProcessAdapter:
        """Return the in-process adapter for *provider*, creating it on first use.

        Raises:
            ConfigError: If *provider* is bound to a different transport.
        """
        adapter = self.dispatcher.adapters.get(provider)
        if adapter is None:
            adapter = InProcessAdapter(provider)
            self.dispatcher.attach(adapter)
        if not isinstance(adapter, InProcessAdapter):
            raise ConfigError(f"Provider '{provider}' uses transport '{adapter.transport}', not inprocess")
        return adapter

    def register_tool(
        self,
        name: str,
        fn: Callable[..., Any],
        *,
        provider: str = DEFAULT_LOCAL_PROVIDER,
        version: str = "1.0.0",
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        output_schema: Optional[Dict[str, Any]] = None,
        required_scope: Iterable[str] = (),
        side_effect: str = "pure",
        kind: str = "tool",
    ) -> Capability:
        """Register a Python callable as a capability.

        Raises:
            DuplicateCapability: If *name* at *version* is already registered.
            ConfigError:         On unknown permission tokens.
        """
        capability = Capability(
            name=name,
            provider=provider,
            version=version,
            kind=CapabilityKind(kind),
            description=description or (fn.__doc__ or "").strip().split("\n")[0],
            input_schema=input_schema or {},
            output_schema=output_schema or {},
            required_scope=Permission.parse_many(required_scope),
            side_effect=SideEffect(side_effect),
        )
        adapter = self.local_adapter(provider)
        self.registry.register(capability)
        adapter.bind(name, fn)
        logger.info("Tool registered: %s@%s (provider=%s)", name, version, provider)
        return capability

    def tool(self, name: str, **kwargs) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register_tool`."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_tool(name, fn, **kwargs)
            return fn

        return decorator

    def bind(self, name: str, fn: Callable[..., Any]) -> None:
        """Attach an implementation to a config-declared in-process capability."""
        capability = self.registry.lookup(name)
        self.local_adapter(capability.provider).bind(name, fn)

    def register_provider(self, adapter: TransportAdapter, capabilities: Iterable[Capability]) -> None:
        """Attach *adapter* and register its manifest atomically."""
        capabilities = list(capabilities)
        for cap in capabilities:
            if cap.provider != adapter.provider:
                raise ConfigError(f"Capability '{cap.name}' belongs to '{cap.provider}', not '{adapter.provider}'")
        self.registry.register_many(capabilities)
        self.dispatcher.attach(adapter)
        logger.info("Provider '%s' registered with %d capabilities", adapter.provider, len(capabilities))

    def deregister_tool(self, name: str, version: Optional[str] = None) -> None:
        """Remove a capability; unbinds the in-process handler once no version is left."""
        capability = self.registry.lookup(name, version)
        self.registry.deregister(name, version)
        adapter = self.dispatcher.adapters.get(capability.provider)
        if isinstance(adapter, InProcessAdapter) and not self.registry.has(name):
            adapter.unbind(name)

    # ------------------------------------------------------------------
    # Reload
    # ------------------------------------------------------------------

    def reload(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a new configuration without dropping sessions.

        Policy, trust anchor, rate limits, session expiry and invocation
        settings are swapped atomically; existing session grants are then
        narrowed to what the new policy permits.  Config-declared
        capabilities are reconciled.  New providers are attached; removing
        a provider only takes effect on restart.

        Raises:
            ConfigError: If the new config is invalid (nothing is changed).
        """
        settings = BrokerSettings.from_config(config, version=self.gate.policy.version + 1)

        known = set(self.dispatcher.adapters)
        for entry in settings.providers:
            if entry["id"] not in known:
                self.dispatcher.attach(create_adapter(entry))
        removed = known - {p["id"] for p in settings.providers} - self._tool_providers()
        if removed:
            logger.warning("Provider removal requires a restart: %s", sorted(removed))

        declared = {c.key: c for c in settings.capabilities}
        for name, version in self._declared - set(declared):
            try:
                self.registry.deregister(name, version)
            except UnknownCapability:
                logger.debug("Capability %s@%s already gone", name, version)
        self.registry.register_many(
            c for key, c in declared.items() if key not in self._declared and not self._registered(c)
        )
        self._declared = set(declared)

        self.gate.reload(settings.policy)
        self.validator.reload(settings.anchor)
        self.limiter.reconfigure(settings.rate_limit)
        self.sessions.reconfigure(settings.sessions)
        self.dispatcher.reconfigure(settings.invocation)
        narrowed = self.sessions.revalidate()
        self.settings = settings
        logger.info("Configuration reloaded (policy version %d, %d grant(s) revoked)", settings.policy.version, narrowed)
        return {"policy_version": settings.policy.version, "revoked_grants": narrowed}

    def _registered(self, capability: Capability) -> bool:
        try:
            self.registry.lookup(capability.name, capability.version)
        except UnknownCapability:
            return False
        return True

    def _tool_providers(self) -> Set[str]:
        """Providers that own capabilities registered in code rather than config."""
        return {c.provider for c in self.registry.list(latest_only=False) if c.key not in self._declared}

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    def maintain(self) -> Dict[str, int]:
        """Run one maintenance pass: sweep sessions, collect buckets, refresh gauges."""
        swept = self.sessions.sweep()
        collected = self.limiter.collect_garbage()
        self.metrics.update_status(
            sessions_active=self.sessions.active_count(),
            capabilities=len(self.registry),
        )
        return {"sessions_swept": swept, "buckets_collected": collected}

    async def start(self) -> None:
        """Begin the background maintenance loop.

        Idempotent: calling start on a running broker is a no-op.
        """
        if self._task is not None and not self._task.done():
            return
        self._start_time = time.monotonic()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Broker '%s' started", self.settings.name)

    async def stop(self) -> None:
        """Stop the background loop."""
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Maintenance loop cancelled")
        self._task = None
        logger.info("Broker '%s' stopped", self.settings.name)

    async def close(self) -> None:
        """Stop the loop, cancel in-flight calls and close every adapter."""
        await self.stop()
        await self.dispatcher.close()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.sessions.settings.sweep_interval)
            except asyncio.TimeoutError:
                self.maintain()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def health(self) -> Dict[str, Any]:
        return {
            "name": self.settings.name,
            "running": self.running,
            "uptime_s": round(time.monotonic() - self._start_time, 1) if self._start_time else 0.0,
            "capabilities": len(self.registry),
            "providers": [a.health() for a in self.dispatcher.adapters.values()],
            "sessions_active": self.sessions.active_count(),
            "in_flight": len(self.dispatcher.in_flight),
            "policy_version": self.gate.policy.version,
            "rate_limit": self.limiter.to_dict(),
        }
