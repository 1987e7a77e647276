"""
Capstan dispatcher -- the request pipeline.

Every invocation runs the same short-circuiting pipeline::

    1. session   SessionManager.validate           -> SessionInvalid
    2. lookup    CapabilityRegistry.lookup         -> UnknownCapability
    3. grant     name in session.granted           -> AuthorizationFailed
    3b. payload  jsonschema against input_schema   -> InvalidPayload
    4. admit     RateLimiter.admit                 -> RateLimited(retry_after)
    5. route     adapter for capability.provider, under one deadline
    6. answer    ok envelope, or an error envelope carrying the public kind

Steps 1-4 never suspend, so a request is checked against one consistent view
of sessions, registry, policy and limits.  Step 5 always releases its
bookkeeping (in-flight slot, session touch, cancellation entry) however it
ends.  When step 5 is cut short (explicit cancel, deadline, or the caller
going away) the bound adapter is told to abort the downstream work.

``invoke`` and ``invoke_stream`` never raise broker errors; failures come
back as error envelopes.  Provider error text is logged, never returned.

Usage::

    dispatcher = Dispatcher(registry, validator, gate, limiter, sessions,
                            adapters={"local": adapter})
    result = await dispatcher.negotiate("Bearer eyJ...", ["math.add"])
    reply = await dispatcher.invoke(InvocationRequest(result.session.id, "math.add", {"a": 1, "b": 2}))
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import jsonschema

from capstan.adapters.base import TransportAdapter
from capstan.capabilities import Capability, CapabilityQuery, CapabilityRegistry
from capstan.config import InvocationSettings
from capstan.credentials import CredentialValidator, Identity
from capstan.envelope import InvocationRequest, InvocationResult
from capstan.errors import (
    RETRYABLE,
    AdapterError,
    AuthenticationError,
    BrokerError,
    Cancelled,
    ConfigError,
    InvalidPayload,
    InvocationTimeout,
    NotGranted,
    SessionError,
)
from capstan.metrics import MetricsRegistry, get_metrics
from capstan.ratelimit import RateLimiter
from capstan.rbac import AuthorizationGate, Permission
from capstan.sessions import NegotiationResult, Session, SessionManager

logger = logging.getLogger("Capstan.Dispatcher")

# Queue item tags for the stream pump.
_CHUNK = "chunk"
_ERROR = "error"
_END = "end"


@dataclass
class _Call:
    """Bookkeeping for one in-flight invocation."""

    correlation_id: str
    capability: str
    identity_id: str
    adapter: TransportAdapter
    task: Optional[asyncio.Task] = None
    cancelled: bool = False
    started: float = field(default_factory=time.monotonic)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.identity_id, self.correlation_id)


class Dispatcher:
    """Orchestrates negotiation, invocation, streaming and cancellation.

    Args:
        registry:   Capability registry.
        validator:  Credential validator.
        gate:       Authorization gate.
        limiter:    Rate limiter.
        sessions:   Session manager.
        adapters:   Provider id -> transport adapter.
        settings:   Deadline and retry policy.
        metrics:    Metrics registry (defaults to the process singleton).
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        validator: CredentialValidator,
        gate: AuthorizationGate,
        limiter: RateLimiter,
        sessions: SessionManager,
        adapters: Optional[Dict[str, TransportAdapter]] = None,
        settings: Optional[InvocationSettings] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.registry = registry
        self.validator = validator
        self.gate = gate
        self.limiter = limiter
        self.sessions = sessions
        self._adapters: Dict[str, TransportAdapter] = dict(adapters or {})
        self._settings = settings or InvocationSettings()
        self._metrics = metrics or get_metrics()
        # Correlation ids are chosen by callers, so they are unique per identity only.
        self._calls: Dict[Tuple[str, str], _Call] = {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    @property
    def settings(self) -> InvocationSettings:
        return self._settings

    def reconfigure(self, settings: InvocationSettings) -> None:
        self._settings = settings

    def attach(self, adapter: TransportAdapter) -> None:
        """Route the adapter's provider through *adapter* (replacing any previous one)."""
        self._adapters[adapter.provider] = adapter

    def detach(self, provider: str) -> Optional[TransportAdapter]:
        return self._adapters.pop(provider, None)

    def adapter_for(self, provider: str) -> TransportAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise AdapterError(f"no adapter attached for provider '{provider}'")
        return adapter

    @property
    def adapters(self) -> Dict[str, TransportAdapter]:
        return dict(self._adapters)

    @property
    def in_flight(self) -> List[str]:
        """Correlation ids of invocations currently running."""
        return [cid for _, cid in self._calls]

    # ------------------------------------------------------------------
    # Discovery and negotiation
    # ------------------------------------------------------------------

    def discover(self, provider: Optional[str] = None, scope: Optional[Iterable[Permission]] = None) -> CapabilityQuery:
        """Lazy listing of capabilities, optionally filtered."""
        return self.registry.list(provider=provider, scope=scope)

    async def authenticate(self, credential: str) -> Identity:
        """Validate *credential*, off the event loop when keys are fetched remotely.

        Raises:
            AuthenticationError: Public kind ``AuthenticationFailed``.
        """
        try:
            if self.validator.requires_fetch:
                return await asyncio.to_thread(self.validator.validate, credential)
            return self.validator.validate(credential)
        except AuthenticationError as exc:
            self._metrics.record_error(exc.kind)
            raise

    async def negotiate(self, credential: str, requested: Iterable[str]) -> NegotiationResult:
        """Authenticate and open a session scoped to the permitted subset of *requested*.

        Raises:
            AuthenticationError: Credential rejected.
            AuthorizationError:  The role has no policy entry at all.
        """
        try:
            identity = await self.authenticate(credential)
        except AuthenticationError:
            self._metrics.record_negotiation("rejected")
            raise
        try:
            result = self.sessions.create(identity, requested)
        except BrokerError as exc:
            logger.warning("Negotiation for %s refused: %s (%s)", identity.id, exc.kind, exc.detail)
            self._metrics.record_error(exc.kind)
            self._metrics.record_negotiation("rejected")
            raise
        self._metrics.record_negotiation("partial" if result.partial else "granted")
        return result

    async def narrow(self, credential: str, session_id: str, keep: Iterable[str]) -> Session:
        """Shrink the owner's session grant to the names in *keep*.

        Raises:
            AuthenticationError: Credential rejected.
            AuthorizationError:  The credential does not own the session.
            SessionError:        Unknown, closed or expired session.
        """
        identity = await self.authenticate(credential)
        session = self.sessions.narrow(session_id, identity.id, keep)
        logger.info("Session of %s narrowed to %s", identity.id, sorted(session.granted))
        return session

    async def close_session(self, credential: str, session_id: str) -> None:
        """Close *session_id* on behalf of its owner."""
        identity = await self.authenticate(credential)
        self.sessions.close(session_id, identity_id=identity.id)

    # ------------------------------------------------------------------
    # Pipeline steps 1-4 (never suspend)
    # ------------------------------------------------------------------

    def _admit(self, request: InvocationRequest) -> Tuple[Session, Capability, TransportAdapter]:
        session = self.sessions.validate(request.session_id)
        capability = self.registry.lookup(request.capability)
        if capability.name not in session.granted:
            raise NotGranted(f"session of {session.identity_id} was not granted '{capability.name}'")
        if self._settings.validate_payloads:
            self._check_payload(capability, request.payload)
        if (session.identity_id, request.correlation_id) in self._calls:
            raise AdapterError(f"{session.identity_id} reused in-flight correlation id {request.correlation_id}")
        self.limiter.admit(session.identity_id, capability.name, session.role)
        adapter = self.adapter_for(capability.provider)
        return session, capability, adapter

    @staticmethod
    def _check_payload(capability: Capability, payload: Dict[str, Any]) -> None:
        if not capability.input_schema:
            return
        try:
            jsonschema.validate(instance=payload, schema=dict(capability.input_schema))
        except jsonschema.ValidationError as exc:
            raise InvalidPayload(f"'{capability.name}': {exc.message}") from exc
        except jsonschema.SchemaError as exc:
            raise ConfigError(f"'{capability.name}' has an invalid input schema: {exc.message}") from exc

    # ------------------------------------------------------------------
    # Single-shot invocation
    # ------------------------------------------------------------------

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        """Run one request through the pipeline and return its result envelope.

        Cancelling the task that awaits this coroutine (a disconnected
        client) aborts the provider call and re-raises ``CancelledError``.
        """
        started = time.perf_counter()
        cid = request.correlation_id
        try:
            session, capability, adapter = self._admit(request)
        except BrokerError as exc:
            return self._reject(request, exc, started)

        loop = asyncio.get_running_loop()
        timeout = self._settings.clamp(request.timeout)
        deadline = loop.time() + timeout
        call = _Call(cid, capability.name, session.identity_id, adapter)
        self._calls[call.key] = call
        self._metrics.in_flight(+1)
        try:
            with self.limiter.in_flight(session.identity_id, capability.name, session.role):
                call.task = asyncio.ensure_future(
                    self._call_with_retry(adapter, capability, request.payload, cid, deadline, timeout)
                )
                try:
                    output = await call.task
                except asyncio.CancelledError:
                    if call.cancelled:
                        raise Cancelled(f"'{capability.name}' cancelled by caller")
                    call.cancelled = True
                    self._metrics.record_cancel()
                    logger.info("Caller of %s [%s] went away; aborting", capability.name, cid)
                    await asyncio.shield(self._abort(call))
                    raise
            result = InvocationResult.success(cid, output)
        except BrokerError as exc:
            result = InvocationResult.failure(cid, exc)
            self._log_failure(session.identity_id, capability.name, cid, exc)
        finally:
            self._release(call, session)

        self._record(capability.name, result, started)
        if result.ok:
            logger.info(
                "Invoked %s for %s [%s] in %.1fms",
                capability.name,
                session.identity_id,
                cid,
                (time.perf_counter() - started) * 1000,
            )
        return result

    async def _call_with_retry(
        self,
        adapter: TransportAdapter,
        capability: Capability,
        payload: Dict[str, Any],
        correlation_id: str,
        deadline: float,
        timeout: float,
    ) -> Any:
        """Call the adapter within *deadline*; pure capabilities get one retry."""
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise InvocationTimeout(f"'{capability.name}' exceeded its {timeout:.3f}s deadline")
            try:
                return await self._attempt(adapter, capability, payload, correlation_id, remaining, timeout)
            except RETRYABLE as exc:
                backoff = self._settings.retry_backoff
                room = deadline - loop.time() - backoff
                if attempt or not capability.is_pure or room <= 0:
                    raise
                attempt += 1
                self._metrics.record_retry(capability.name)
                logger.warning(
                    "Retrying %s [%s] after %s: %s",
                    capability.name,
                    correlation_id,
                    exc.kind,
                    exc.detail,
                )
                await asyncio.sleep(backoff)

    async def _attempt(
        self,
        adapter: TransportAdapter,
        capability: Capability,
        payload: Dict[str, Any],
        correlation_id: str,
        remaining: float,
        timeout: float,
    ) -> Any:
        try:
            return await asyncio.wait_for(adapter.invoke(capability, payload, correlation_id), remaining)
        except asyncio.TimeoutError as exc:
            await self._notify_adapter(adapter, correlation_id)
            raise InvocationTimeout(f"'{capability.name}' exceeded its {timeout:.3f}s deadline") from exc
        except BrokerError:
            raise
        except Exception as exc:
            raise AdapterError(f"{adapter.provider} adapter raised {exc!r}") from exc

    # ------------------------------------------------------------------
    # Streaming invocation
    # ------------------------------------------------------------------

    async def invoke_stream(self, request: InvocationRequest) -> AsyncIterator[InvocationResult]:
        """Run one request and yield result envelopes as the provider produces them.

        Chunks arrive with increasing ``sequence`` and ``done=False``; the
        stream ends with a ``done=True`` element (an error envelope on
        failure).  A cancelled stream simply stops: no further elements are
        delivered.  Closing the iterator early (client disconnect) cancels
        the downstream work.
        """
        started = time.perf_counter()
        cid = request.correlation_id
        try:
            session, capability, adapter = self._admit(request)
        except BrokerError as exc:
            yield self._reject(request, exc, started)
            return

        loop = asyncio.get_running_loop()
        timeout = self._settings.clamp(request.timeout)
        deadline = loop.time() + timeout
        call = _Call(cid, capability.name, session.identity_id, adapter)
        self._calls[call.key] = call
        self._metrics.in_flight(+1)
        queue: asyncio.Queue = asyncio.Queue()
        sequence = 0
        final: Optional[InvocationResult] = None
        try:
            with self.limiter.in_flight(session.identity_id, capability.name, session.role):
                call.task = asyncio.ensure_future(self._pump(adapter, capability, request.payload, cid, queue))
                expired = f"'{capability.name}' stream exceeded its {timeout:.3f}s deadline"
                while not call.cancelled:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise InvocationTimeout(expired)
                    try:
                        tag, item = await asyncio.wait_for(queue.get(), remaining)
                    except asyncio.TimeoutError as exc:
                        raise InvocationTimeout(expired) from exc
                    if call.cancelled:
                        break
                    if tag == _CHUNK:
                        yield InvocationResult.success(cid, item, sequence=sequence, done=False)
                        sequence += 1
                    elif tag == _ERROR:
                        raise item
                    else:
                        final = InvocationResult.success(cid, None, sequence=sequence, done=True)
                        yield final
                        break
        except BrokerError as exc:
            final = InvocationResult.failure(cid, exc, sequence=sequence)
            self._log_failure(session.identity_id, capability.name, cid, exc)
            yield final
        finally:
            if call.task is not None and not call.task.done():
                # Provider still producing: the consumer went away or the deadline hit.
                if final is None and not call.cancelled:
                    self._metrics.record_cancel()
                    logger.info("Stream %s [%s] closed by consumer", capability.name, cid)
                call.cancelled = True
                await self._abort(call)
            self._release(call, session)
            if final is not None:
                self._record(capability.name, final, started)
            if final is not None and final.ok:
                logger.info(
                    "Streamed %s for %s [%s]: %d chunk(s) in %.1fms",
                    capability.name,
                    session.identity_id,
                    cid,
                    sequence,
                    (time.perf_counter() - started) * 1000,
                )

    async def _pump(
        self,
        adapter: TransportAdapter,
        capability: Capability,
        payload: Dict[str, Any],
        correlation_id: str,
        queue: asyncio.Queue,
    ) -> None:
        """Copy the adapter stream into *queue*; always ends with an ``_END`` item."""
        try:
            async for chunk in adapter.stream(capability, payload, correlation_id):
                queue.put_nowait((_CHUNK, chunk))
        except BrokerError as exc:
            queue.put_nowait((_ERROR, exc))
        except Exception as exc:
            queue.put_nowait((_ERROR, AdapterError(f"{adapter.provider} stream raised {exc!r}")))
        finally:
            queue.put_nowait((_END, None))

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, correlation_id: str, identity_id: Optional[str] = None) -> bool:
        """Cancel an in-flight invocation.

        With *identity_id*, only that identity's own call with this
        correlation id is considered; other identities' calls are invisible.
        Without it (broker shutdown, operators) every call using the id is
        cancelled.

        Returns:
            True if an invocation was running and is now cancelled.
        """
        if identity_id is not None:
            found = self._calls.get((identity_id, correlation_id))
            targets = [found] if found is not None else []
        else:
            targets = [c for c in self._calls.values() if c.correlation_id == correlation_id]
        cancelled = False
        for call in targets:
            cancelled = await self._cancel_call(call) or cancelled
        return cancelled

    async def _cancel_call(self, call: _Call) -> bool:
        if call.cancelled:
            return False
        call.cancelled = True
        self._metrics.record_cancel()
        logger.info("Cancelling %s [%s] for %s", call.capability, call.correlation_id, call.identity_id)
        await self._abort(call)
        return True

    async def _abort(self, call: _Call) -> None:
        # The local task is cancelled before the provider round trip starts.
        if call.task is not None and not call.task.done():
            call.task.cancel()
        await self._notify_adapter(call.adapter, call.correlation_id)

    @staticmethod
    async def _notify_adapter(adapter: TransportAdapter, correlation_id: str) -> None:
        try:
            await adapter.cancel(correlation_id)
        except BrokerError as exc:
            logger.debug("Adapter cancel for %s failed: %s", correlation_id, exc.detail)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _release(self, call: _Call, session: Session) -> None:
        self._calls.pop(call.key, None)
        self._metrics.in_flight(-1)
        try:
            self.sessions.touch(session.id)
        except SessionError as exc:
            logger.debug("Session of %s ended during call: %s", session.identity_id, exc.kind)

    def _reject(self, request: InvocationRequest, exc: BrokerError, started: float) -> InvocationResult:
        logger.warning(
            "Rejected %s [%s]: %s (%s)",
            request.capability,
            request.correlation_id,
            exc.kind,
            exc.detail,
        )
        result = InvocationResult.failure(request.correlation_id, exc)
        self._metrics.record_error(exc.kind)
        self._record(request.capability, result, started)
        return result

    def _log_failure(self, identity_id: str, capability: str, correlation_id: str, exc: BrokerError) -> None:
        level = logging.INFO if isinstance(exc, Cancelled) else logging.WARNING
        logger.log(
            level,
            "Invocation %s for %s [%s] failed: %s (%s)",
            capability,
            identity_id,
            correlation_id,
            exc.kind,
            exc.detail,
        )
        self._metrics.record_error(exc.kind)

    def _record(self, capability: str, result: InvocationResult, started: float) -> None:
        status = "ok" if result.ok else result.error_kind or "error"
        self._metrics.record_invocation(capability, status, (time.perf_counter() - started) * 1000)

    async def close(self) -> None:
        """Cancel everything in flight and close every adapter."""
        for call in list(self._calls.values()):
            await self._cancel_call(call)
        for adapter in list(self._adapters.values()):
            await adapter.close()
