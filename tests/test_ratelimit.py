"""Tests for capstan/ratelimit.py -- sliding-window admission control."""

import threading

import pytest

from capstan.errors import ConfigError, RateLimited
from capstan.ratelimit import Quota, RateLimiter, RateLimitSettings
from capstan.rbac import Role


def _limiter(clock, **cfg):
    return RateLimiter(RateLimitSettings.from_config(cfg), clock=clock)


class TestSettings:
    def test_defaults(self):
        s = RateLimitSettings.from_config(None)
        assert s.default == Quota(60, 60.0)
        assert s.scope == "identity"

    def test_overrides_inherit_default_window(self):
        s = RateLimitSettings.from_config(
            {"quota": 10, "window_s": 30, "roles": {"viewer": {"quota": 2}}, "capabilities": {"x": {"window_s": 5}}}
        )
        assert s.roles[Role.VIEWER] == Quota(2, 30.0)
        assert s.capabilities["x"] == Quota(10, 5.0)

    def test_bad_scope(self):
        with pytest.raises(ConfigError):
            RateLimitSettings.from_config({"scope": "global"})

    def test_bad_window(self):
        with pytest.raises(ConfigError):
            RateLimitSettings.from_config({"window_s": 0})

    def test_bad_role(self):
        with pytest.raises(ConfigError):
            RateLimitSettings.from_config({"roles": {"root": {"quota": 1}}})


class TestAdmission:
    def test_burst_of_exactly_quota_admitted(self, clock):
        limiter = _limiter(clock, quota=5, window_s=60)
        for i in range(5):
            assert limiter.admit("agent", "x").remaining == 4 - i
        with pytest.raises(RateLimited):
            limiter.admit("agent", "x")

    def test_retry_after_from_oldest(self, clock):
        limiter = _limiter(clock, quota=2, window_s=60)
        limiter.admit("agent", "x")
        clock.advance(10)
        limiter.admit("agent", "x")
        clock.advance(5)
        with pytest.raises(RateLimited) as exc_info:
            limiter.admit("agent", "x")
        assert exc_info.value.retry_after == pytest.approx(45.0)

    def test_window_boundary_evicts(self, clock):
        limiter = _limiter(clock, quota=1, window_s=60)
        limiter.admit("agent", "x")
        clock.advance(60)
        limiter.admit("agent", "x")

    def test_rejection_is_not_counted(self, clock):
        limiter = _limiter(clock, quota=1, window_s=60)
        limiter.admit("agent", "x")
        for _ in range(3):
            with pytest.raises(RateLimited):
                limiter.admit("agent", "x")
        assert limiter.usage("agent", "x") == 1

    def test_identities_are_independent(self, clock):
        limiter = _limiter(clock, quota=1, window_s=60)
        limiter.admit("a", "x")
        limiter.admit("b", "x")

    def test_zero_quota_is_unlimited(self, clock):
        limiter = _limiter(clock, quota=0)
        for _ in range(1000):
            assert limiter.admit("agent", "x").remaining is None


class TestKeying:
    def test_identity_scope_shares_bucket(self, clock):
        limiter = _limiter(clock, quota=1)
        limiter.admit("agent", "x")
        with pytest.raises(RateLimited):
            limiter.admit("agent", "y")

    def test_identity_capability_scope(self, clock):
        limiter = _limiter(clock, quota=1, scope="identity_capability")
        limiter.admit("agent", "x")
        limiter.admit("agent", "y")

    def test_capability_override_gets_own_bucket(self, clock):
        limiter = _limiter(clock, quota=1, capabilities={"search": {"quota": 3}})
        for _ in range(3):
            limiter.admit("agent", "search")
        limiter.admit("agent", "other")
        with pytest.raises(RateLimited):
            limiter.admit("agent", "search")

    def test_precedence(self, clock):
        limiter = _limiter(
            clock,
            quota=10,
            roles={"viewer": {"quota": 2}},
            capabilities={"search": {"quota": 4}},
        )
        assert limiter.resolve("a", "other", Role.VIEWER)[1].limit == 2
        assert limiter.resolve("a", "search", Role.VIEWER)[1].limit == 4
        assert limiter.resolve("a", "other", Role.ADMIN)[1].limit == 10


class TestInFlight:
    def test_slot_released_on_exception(self, clock):
        limiter = _limiter(clock, max_in_flight=1)
        with pytest.raises(RuntimeError):
            with limiter.in_flight("agent", "x"):
                raise RuntimeError("boom")
        with limiter.in_flight("agent", "x"):
            pass

    def test_concurrency_cap(self, clock):
        limiter = _limiter(clock, max_in_flight=1)
        with limiter.in_flight("agent", "x"):
            with pytest.raises(RateLimited):
                with limiter.in_flight("agent", "x"):
                    pass


class TestMaintenance:
    def test_collect_garbage(self, clock):
        limiter = _limiter(clock, quota=5, window_s=10)
        limiter.admit("a", "x")
        limiter.admit("b", "x")
        clock.advance(5)
        assert limiter.collect_garbage() == 0
        clock.advance(6)
        assert limiter.collect_garbage() == 2
        assert len(limiter) == 0

    def test_busy_bucket_survives_gc(self, clock):
        limiter = _limiter(clock, quota=5, window_s=10)
        with limiter.in_flight("a", "x"):
            clock.advance(100)
            assert limiter.collect_garbage() == 0

    def test_reconfigure(self, clock):
        limiter = _limiter(clock, quota=1)
        limiter.admit("a", "x")
        limiter.reconfigure(RateLimitSettings(default=Quota(3, 60.0)))
        limiter.admit("a", "x")
        assert limiter.to_dict()["quota"] == 3


def test_concurrent_admission_never_exceeds_quota(clock):
    limiter = _limiter(clock, quota=50, window_s=60)
    admitted = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            try:
                limiter.admit("agent", "x")
            except RateLimited:
                continue
            with lock:
                admitted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(admitted) == 50
