"""
Capstan rate limiter.

Sliding-window admission control.  Each bucket keeps the timestamps of the
requests it admitted within the trailing window::

    evict every timestamp <= now - window
    admit   if count < quota          (a burst of exactly ``quota`` is admitted)
    reject  otherwise, retry_after = oldest + window - now  (clamped to >= 0)

Buckets are keyed by identity (default) or by identity+capability.  A
capability with its own quota override always gets a dedicated bucket.
Per-role quota overrides sit between the two::

    capability override > role override > default

Buckets live in a sharded table; each bucket has its own lock, so two
identities never contend on the same mutex.  Idle buckets are dropped by
:meth:`RateLimiter.collect_garbage`.

Config example (``rate_limit`` section)::

    rate_limit:
      quota: 60
      window_s: 60
      scope: identity            # or identity_capability
      max_in_flight: 8           # 0 = unlimited concurrent calls per bucket
      roles:
        viewer: {quota: 10}
      capabilities:
        search.web: {quota: 5, window_s: 60}
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Hashable, Iterator, Mapping, Optional, Tuple

from capstan.errors import ConfigError, RateLimited
from capstan.rbac import Role
from capstan.shards import ShardedTable

logger = logging.getLogger("Capstan.RateLimit")

SCOPE_IDENTITY = "identity"
SCOPE_IDENTITY_CAPABILITY = "identity_capability"
_SCOPES = (SCOPE_IDENTITY, SCOPE_IDENTITY_CAPABILITY)


@dataclass(frozen=True)
class Quota:
    """``limit`` requests per ``window`` seconds.  ``limit == 0`` means unlimited."""

    limit: int
    window: float

    def __post_init__(self):
        if self.limit < 0:
            raise ConfigError("rate limit quota must be >= 0")
        if self.window <= 0:
            raise ConfigError("rate limit window must be > 0")

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], base: Quota) -> Quota:
        return cls(
            limit=int(cfg.get("quota", base.limit)),
            window=float(cfg.get("window_s", base.window)),
        )


@dataclass(frozen=True)
class RateLimitSettings:
    default: Quota = Quota(60, 60.0)
    scope: str = SCOPE_IDENTITY
    capabilities: Mapping[str, Quota] = field(default_factory=dict)
    roles: Mapping[Role, Quota] = field(default_factory=dict)
    max_in_flight: int = 0

    def __post_init__(self):
        if self.scope not in _SCOPES:
            raise ConfigError(f"rate_limit.scope must be one of {list(_SCOPES)}, got {self.scope!r}")
        if self.max_in_flight < 0:
            raise ConfigError("rate_limit.max_in_flight must be >= 0")

    @classmethod
    def from_config(cls, cfg: Optional[Mapping[str, Any]]) -> RateLimitSettings:
        """Build settings from the ``rate_limit`` config section.

        Raises:
            ConfigError: On invalid numbers, scopes or role names.
        """
        cfg = cfg or {}
        try:
            default = Quota(int(cfg.get("quota", 60)), float(cfg.get("window_s", 60.0)))
            capabilities = {
                name: Quota.from_config(sub or {}, default)
                for name, sub in (cfg.get("capabilities") or {}).items()
            }
            roles = {}
            for role_name, sub in (cfg.get("roles") or {}).items():
                roles[Role.parse(role_name)] = Quota.from_config(sub or {}, default)
            return cls(
                default=default,
                scope=cfg.get("scope", SCOPE_IDENTITY),
                capabilities=capabilities,
                roles=roles,
                max_in_flight=int(cfg.get("max_in_flight", 0)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid rate_limit section: {exc}") from exc


@dataclass(frozen=True)
class Admission:
    """Successful admission.  ``remaining`` is ``None`` for unlimited buckets."""

    key: Hashable
    remaining: Optional[int]


class RateBucket:
    """Timestamps of admitted requests for one key, guarded by its own lock."""

    __slots__ = ("lock", "quota", "timestamps", "in_flight", "last_seen")

    def __init__(self, quota: Quota, now: float):
        self.lock = threading.Lock()
        self.quota = quota
        self.timestamps: Deque[float] = deque()
        self.in_flight = 0
        self.last_seen = now

    def evict(self, now: float) -> None:
        cutoff = now - self.quota.window
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def is_idle(self, now: float) -> bool:
        return self.in_flight == 0 and now - self.last_seen > self.quota.window


class RateLimiter:
    """Per-identity sliding-window limiter.

    Args:
        settings:  Quotas and scoping policy.
        clock:     Monotonic time source (injectable for tests).
        shards:    Number of independently locked key shards.
    """

    def __init__(
        self,
        settings: Optional[RateLimitSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        shards: int = 16,
    ):
        self._settings = settings or RateLimitSettings()
        self._clock = clock
        self._buckets: ShardedTable[RateBucket] = ShardedTable(shards)

    @property
    def settings(self) -> RateLimitSettings:
        return self._settings

    def reconfigure(self, settings: RateLimitSettings) -> None:
        """Swap quota settings.  Existing buckets adopt new quotas on next use."""
        self._settings = settings
        logger.info(
            "Rate limits reconfigured: %d/%.0fs scope=%s",
            settings.default.limit,
            settings.default.window,
            settings.scope,
        )

    # ------------------------------------------------------------------
    # Keying
    # ------------------------------------------------------------------

    def resolve(self, identity_id: str, capability: str, role: Optional[Role] = None) -> Tuple[Hashable, Quota]:
        """Return the bucket key and quota that apply to this request."""
        settings = self._settings
        override = settings.capabilities.get(capability)
        if override is not None:
            return (identity_id, capability), override
        quota = settings.roles.get(role, settings.default) if role is not None else settings.default
        if settings.scope == SCOPE_IDENTITY_CAPABILITY:
            return (identity_id, capability), quota
        return (identity_id,), quota

    def _bucket(self, key: Hashable, quota: Quota, now: float) -> RateBucket:
        shard = self._buckets.shard(key)
        with shard.lock:
            bucket = shard.items.get(key)
            if bucket is None:
                bucket = RateBucket(quota, now)
                shard.items[key] = bucket
            return bucket

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(self, identity_id: str, capability: str, role: Optional[Role] = None) -> Admission:
        """Admit or reject one request.

        Raises:
            RateLimited: When the bucket already holds ``quota`` requests in
                the trailing window.
        """
        key, quota = self.resolve(identity_id, capability, role)
        now = self._clock()
        bucket = self._bucket(key, quota, now)
        with bucket.lock:
            bucket.quota = quota
            bucket.last_seen = now
            if quota.limit == 0:
                return Admission(key=key, remaining=None)
            bucket.evict(now)
            if len(bucket.timestamps) >= quota.limit:
                retry_after = max(0.0, bucket.timestamps[0] + quota.window - now)
                logger.info(
                    "Rate limited %s on '%s' (%d/%.0fs), retry in %.2fs",
                    identity_id,
                    capability,
                    quota.limit,
                    quota.window,
                    retry_after,
                )
                raise RateLimited(retry_after, detail=f"bucket {key!r} full")
            bucket.timestamps.append(now)
            return Admission(key=key, remaining=quota.limit - len(bucket.timestamps))

    @contextmanager
    def in_flight(self, identity_id: str, capability: str, role: Optional[Role] = None) -> Iterator[None]:
        """Hold one concurrent-call slot for the duration of the block.

        The slot is released however the block exits.

        Raises:
            RateLimited: If ``max_in_flight`` slots are already held.
        """
        limit = self._settings.max_in_flight
        key, quota = self.resolve(identity_id, capability, role)
        bucket = self._bucket(key, quota, self._clock())
        with bucket.lock:
            if limit and bucket.in_flight >= limit:
                raise RateLimited(0.0, detail=f"bucket {key!r} has {limit} calls in flight")
            bucket.in_flight += 1
        try:
            yield
        finally:
            with bucket.lock:
                bucket.in_flight -= 1
                bucket.last_seen = self._clock()

    # ------------------------------------------------------------------
    # Introspection / maintenance
    # ------------------------------------------------------------------

    def usage(self, identity_id: str, capability: str, role: Optional[Role] = None) -> int:
        """Number of admissions currently counted in the bucket's window."""
        key, _ = self.resolve(identity_id, capability, role)
        shard = self._buckets.shard(key)
        with shard.lock:
            bucket = shard.items.get(key)
        if bucket is None:
            return 0
        with bucket.lock:
            bucket.evict(self._clock())
            return len(bucket.timestamps)

    def collect_garbage(self) -> int:
        """Drop buckets idle for longer than their window.  Returns the count removed."""
        now = self._clock()
        removed = 0
        for shard in self._buckets.shards():
            with shard.lock:
                idle = [k for k, b in shard.items.items() if b.is_idle(now)]
                for k in idle:
                    del shard.items[k]
                removed += len(idle)
        if removed:
            logger.debug("Collected %d idle rate bucket(s)", removed)
        return removed

    def __len__(self) -> int:
        return len(self._buckets)

    def to_dict(self) -> Dict[str, Any]:
        s = self._settings
        return {
            "quota": s.default.limit,
            "window_s": s.default.window,
            "scope": s.scope,
            "max_in_flight": s.max_in_flight,
            "buckets": len(self),
        }
