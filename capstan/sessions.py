"""
Capstan session manager.

A session binds one identity to the subset of capabilities it negotiated.
Every invocation names a session; the session, not the role, is the unit of
scoping.

Lifecycle::

    ACTIVE  --(TTL or idle timeout passes)-->  EXPIRED  --(sweep)-->  CLOSED
    ACTIVE  --(close)----------------------------------------------->  CLOSED

``CLOSED`` is terminal.  Expiry is checked lazily by :meth:`SessionManager.validate`
(an expired session is rejected even if the sweep has not run yet) and
enforced eagerly by :meth:`SessionManager.sweep`, which the broker calls on
a timer so the hot path never scans the whole table.

Usage::

    manager = SessionManager(registry, gate)
    result = manager.create(identity, ["weather.lookup", "files.write"])
    result.denied          # {"files.write": "InsufficientPermission"}
    session = manager.validate(result.session.id)
"""

from __future__ import annotations

import dataclasses
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from capstan.capabilities import CapabilityRegistry
from capstan.credentials import Identity
from capstan.errors import (
    AuthorizationError,
    ConfigError,
    InsufficientPermission,
    SessionExpired,
    SessionNotFound,
    UnknownCapability,
)
from capstan.rbac import AuthorizationGate, Role
from capstan.shards import ShardedTable

logger = logging.getLogger("Capstan.Sessions")


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionSettings:
    """Expiry policy.  A value of 0 disables that limit.

    Attributes:
        ttl:             Absolute lifetime in seconds from creation.
        idle_timeout:    Seconds without activity before the session expires.
        sweep_interval:  Seconds between background sweeps.
    """

    ttl: float = 3600.0
    idle_timeout: float = 900.0
    sweep_interval: float = 30.0

    def __post_init__(self):
        if self.ttl < 0 or self.idle_timeout < 0:
            raise ConfigError("session ttl/idle timeout must be >= 0")
        if self.sweep_interval <= 0:
            raise ConfigError("sessions.sweep_interval_s must be > 0")

    @classmethod
    def from_config(cls, cfg: Optional[Mapping[str, Any]]) -> SessionSettings:
        cfg = cfg or {}
        try:
            return cls(
                ttl=float(cfg.get("ttl_s", 3600.0)),
                idle_timeout=float(cfg.get("idle_timeout_s", 900.0)),
                sweep_interval=float(cfg.get("sweep_interval_s", 30.0)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid sessions section: {exc}") from exc


@dataclass
class Session:
    """Scope binding an identity to a negotiated capability subset.

    Times come from the manager's monotonic clock.
    """

    id: str
    identity_id: str
    role: Role
    granted: FrozenSet[str]
    created_at: float
    last_activity: float
    ttl: float = 0.0
    idle_timeout: float = 0.0
    state: SessionState = SessionState.ACTIVE

    def deadline(self) -> Optional[float]:
        """Earliest instant at which the session expires, or ``None`` if never."""
        deadlines = []
        if self.ttl > 0:
            deadlines.append(self.created_at + self.ttl)
        if self.idle_timeout > 0:
            deadlines.append(self.last_activity + self.idle_timeout)
        return min(deadlines) if deadlines else None

    def is_expired(self, now: float) -> bool:
        deadline = self.deadline()
        return deadline is not None and now > deadline

    def expires_in(self, now: float) -> Optional[float]:
        deadline = self.deadline()
        return None if deadline is None else max(0.0, deadline - now)

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        d = {
            "session_id": self.id,
            "identity": self.identity_id,
            "role": self.role.value,
            "granted": sorted(self.granted),
            "state": self.state.value,
        }
        if now is not None:
            d["expires_in"] = self.expires_in(now)
        return d


@dataclass
class NegotiationResult:
    """Outcome of a negotiation.

    ``denied`` maps each refused capability to a caller-safe reason kind.  A
    result with any denials is a partial grant; the session still exists.
    """

    session: Session
    denied: Dict[str, str] = field(default_factory=dict)

    @property
    def granted(self) -> List[str]:
        return sorted(self.session.granted)

    @property
    def partial(self) -> bool:
        return bool(self.denied)

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        d = self.session.to_dict(now)
        d["denied"] = dict(self.denied)
        d["partial"] = self.partial
        return d


class SessionManager:
    """Creates, validates, touches, narrows, closes and expires sessions.

    Args:
        registry:  Capability registry used to resolve requested names.
        gate:      Authorization gate used during negotiation.
        settings:  Expiry policy.
        clock:     Monotonic time source (injectable for tests).
        shards:    Number of independently locked table shards.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        gate: AuthorizationGate,
        settings: Optional[SessionSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        shards: int = 16,
    ):
        self._registry = registry
        self._gate = gate
        self._settings = settings or SessionSettings()
        self._clock = clock
        self._table: ShardedTable[Session] = ShardedTable(shards)

    @property
    def settings(self) -> SessionSettings:
        return self._settings

    def reconfigure(self, settings: SessionSettings) -> None:
        """Apply a new expiry policy to sessions created from now on."""
        self._settings = settings

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    def create(self, identity: Identity, requested: Iterable[str]) -> NegotiationResult:
        """Negotiate a session for *identity*.

        Each requested capability is checked on its own; refused ones are
        listed in ``denied`` instead of failing the negotiation.

        Raises:
            AuthorizationError: If the identity's role has no policy entry at all.
        """
        if not self._gate.knows_role(identity.role):
            raise AuthorizationError(f"role '{identity.role.value}' has no policy entry")

        granted = set()
        denied: Dict[str, str] = {}
        for name in dict.fromkeys(requested):
            try:
                capability = self._registry.lookup(name)
                self._gate.authorize(identity, capability)
            except UnknownCapability as exc:
                denied[name] = exc.kind
            except InsufficientPermission as exc:
                denied[name] = exc.kind
                logger.info(
                    "Negotiation by %s: '%s' denied (missing %s)",
                    identity.id,
                    name,
                    sorted(exc.missing),
                )
            else:
                granted.add(name)

        now = self._clock()
        settings = self._settings
        session = Session(
            id=secrets.token_urlsafe(32),
            identity_id=identity.id,
            role=identity.role,
            granted=frozenset(granted),
            created_at=now,
            last_activity=now,
            ttl=settings.ttl,
            idle_timeout=settings.idle_timeout,
        )
        shard = self._table.shard(session.id)
        with shard.lock:
            shard.items[session.id] = session

        logger.info(
            "Session created for %s: %d granted, %d denied",
            identity.id,
            len(granted),
            len(denied),
        )
        return NegotiationResult(session=dataclasses.replace(session), denied=denied)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def _live(self, session_id: str, now: float) -> Session:
        """Return the stored session if active (called under its shard lock).

        Marks a session whose deadline passed as expired.
        """
        shard = self._table.shard(session_id)
        session = shard.items.get(session_id)
        if session is None or session.state == SessionState.CLOSED:
            raise SessionNotFound("no such session")
        if session.state == SessionState.EXPIRED or session.is_expired(now):
            session.state = SessionState.EXPIRED
            raise SessionExpired(f"session for {session.identity_id} expired")
        return session

    def validate(self, session_id: str) -> Session:
        """Return a snapshot of the active session.

        Raises:
            SessionNotFound: Unknown or closed session.
            SessionExpired:  TTL or idle deadline has passed.
        """
        shard = self._table.shard(session_id)
        now = self._clock()
        with shard.lock:
            return dataclasses.replace(self._live(session_id, now))

    def touch(self, session_id: str) -> None:
        """Record activity, extending the idle deadline."""
        shard = self._table.shard(session_id)
        now = self._clock()
        with shard.lock:
            session = self._live(session_id, now)
            session.last_activity = max(session.last_activity, now)

    def narrow(self, session_id: str, identity_id: str, keep: Iterable[str]) -> Session:
        """Reduce a session's grant to the intersection with *keep*.

        Raises:
            AuthorizationError: If *identity_id* does not own the session.
        """
        shard = self._table.shard(session_id)
        now = self._clock()
        with shard.lock:
            session = self._live(session_id, now)
            if session.identity_id != identity_id:
                raise AuthorizationError(f"{identity_id} does not own session")
            session.granted = session.granted & frozenset(keep)
            session.last_activity = max(session.last_activity, now)
            return dataclasses.replace(session)

    def close(self, session_id: str, identity_id: Optional[str] = None) -> None:
        """Close a session.  Closing is terminal.

        Raises:
            SessionNotFound:    Unknown or already closed.
            AuthorizationError: If *identity_id* is given and is not the owner.
        """
        shard = self._table.shard(session_id)
        with shard.lock:
            session = shard.items.get(session_id)
            if session is None or session.state == SessionState.CLOSED:
                raise SessionNotFound("no such session")
            if identity_id is not None and session.identity_id != identity_id:
                raise AuthorizationError(f"{identity_id} does not own session")
            session.state = SessionState.CLOSED
            del shard.items[session_id]
        logger.info("Session closed for %s", session.identity_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Close and purge every expired session.  Returns the number purged."""
        now = self._clock()
        purged = 0
        for shard in self._table.shards():
            with shard.lock:
                dead = [
                    sid
                    for sid, s in shard.items.items()
                    if s.state != SessionState.ACTIVE or s.is_expired(now)
                ]
                for sid in dead:
                    shard.items[sid].state = SessionState.CLOSED
                    del shard.items[sid]
                purged += len(dead)
        if purged:
            logger.debug("Swept %d expired session(s)", purged)
        return purged

    def revalidate(self) -> int:
        """Re-check every grant against the current policy and registry.

        Capabilities the owner's role no longer permits are dropped.
        Returns the number of grants removed.
        """
        dropped = 0
        for shard in self._table.shards():
            with shard.lock:
                for session in shard.items.values():
                    keep = set()
                    for name in session.granted:
                        try:
                            capability = self._registry.lookup(name)
                        except UnknownCapability:
                            # Deregistered capabilities fail at lookup; keep the name.
                            keep.add(name)
                            continue
                        if self._gate.permits(session.role, capability):
                            keep.add(name)
                    if len(keep) != len(session.granted):
                        dropped += len(session.granted) - len(keep)
                        logger.info(
                            "Session for %s narrowed by policy reload: dropped %s",
                            session.identity_id,
                            sorted(session.granted - keep),
                        )
                        session.granted = frozenset(keep)
        return dropped

    def active_count(self) -> int:
        now = self._clock()
        return sum(
            1 for _, s in self._table.items() if s.state == SessionState.ACTIVE and not s.is_expired(now)
        )

    def __len__(self) -> int:
        return len(self._table)
