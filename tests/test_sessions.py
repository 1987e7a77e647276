"""Tests for capstan/sessions.py -- negotiation, expiry and narrowing."""

import time

import pytest

from capstan.capabilities import Capability, CapabilityRegistry
from capstan.credentials import Identity
from capstan.errors import AuthorizationError, ConfigError, SessionExpired, SessionNotFound
from capstan.rbac import AuthorizationGate, Permission, PolicySnapshot, Role
from capstan.sessions import SessionManager, SessionSettings, SessionState


def _identity(role=Role.OPERATOR, id="agent-7"):
    now = time.time()
    return Identity(id=id, role=role, issued_at=now, expires_at=now + 3600)


@pytest.fixture()
def registry():
    return CapabilityRegistry(
        [
            Capability("weather.lookup", "weather", required_scope=Permission.parse_many(["read"])),
            Capability("shell.run", "local", required_scope=Permission.parse_many(["read", "execute"])),
            Capability("files.write", "fs", required_scope=Permission.parse_many(["write"])),
        ]
    )


@pytest.fixture()
def gate():
    return AuthorizationGate()


@pytest.fixture()
def manager(registry, gate, clock):
    return SessionManager(registry, gate, SessionSettings(ttl=100, idle_timeout=30), clock=clock)


class TestNegotiation:
    def test_viewer_denied_read_execute(self, manager):
        result = manager.create(_identity(Role.VIEWER), ["shell.run"])
        assert result.granted == []
        assert result.denied == {"shell.run": "InsufficientPermission"}
        assert result.partial

    def test_partial_grant(self, manager):
        result = manager.create(_identity(Role.OPERATOR), ["weather.lookup", "files.write", "nope"])
        assert result.granted == ["weather.lookup"]
        assert result.denied == {"files.write": "InsufficientPermission", "nope": "UnknownCapability"}

    def test_full_grant(self, manager):
        result = manager.create(_identity(Role.ADMIN), ["weather.lookup", "files.write"])
        assert not result.partial
        assert result.session.state is SessionState.ACTIVE

    def test_duplicates_collapsed(self, manager):
        result = manager.create(_identity(), ["weather.lookup", "weather.lookup"])
        assert result.granted == ["weather.lookup"]

    def test_unmapped_role_rejected(self, registry):
        gate = AuthorizationGate(PolicySnapshot(roles={Role.ADMIN: frozenset(Permission)}))
        manager = SessionManager(registry, gate)
        with pytest.raises(AuthorizationError):
            manager.create(_identity(Role.VIEWER), ["weather.lookup"])

    def test_session_ids_unique(self, manager):
        ids = {manager.create(_identity(), []).session.id for _ in range(50)}
        assert len(ids) == 50

    def test_returned_session_is_a_copy(self, manager):
        result = manager.create(_identity(), ["weather.lookup"])
        result.session.granted = frozenset({"files.write"})
        assert manager.validate(result.session.id).granted == {"weather.lookup"}

    def test_to_dict(self, manager, clock):
        d = manager.create(_identity(), ["weather.lookup", "files.write"]).to_dict(clock())
        assert d["granted"] == ["weather.lookup"]
        assert d["denied"] == {"files.write": "InsufficientPermission"}
        assert d["partial"] is True
        assert d["expires_in"] == 30


class TestExpiry:
    def test_idle_timeout(self, manager, clock):
        sid = manager.create(_identity(), ["weather.lookup"]).session.id
        clock.advance(31)
        with pytest.raises(SessionExpired):
            manager.validate(sid)

    def test_touch_extends_idle_deadline(self, manager, clock):
        sid = manager.create(_identity(), ["weather.lookup"]).session.id
        for _ in range(3):
            clock.advance(20)
            manager.touch(sid)
        assert manager.validate(sid).id == sid

    def test_ttl_is_absolute(self, manager, clock):
        sid = manager.create(_identity(), ["weather.lookup"]).session.id
        for _ in range(5):
            clock.advance(20)
            manager.touch(sid)
        clock.advance(5)
        with pytest.raises(SessionExpired):
            manager.validate(sid)

    def test_expired_rejected_before_sweep(self, manager, clock):
        sid = manager.create(_identity(), []).session.id
        clock.advance(31)
        with pytest.raises(SessionExpired):
            manager.touch(sid)
        assert len(manager) == 1
        assert manager.active_count() == 0

    def test_sweep(self, manager, clock):
        old = manager.create(_identity(), []).session.id
        clock.advance(20)
        fresh = manager.create(_identity(), []).session.id
        clock.advance(15)
        assert manager.sweep() == 1
        with pytest.raises(SessionNotFound):
            manager.validate(old)
        assert manager.validate(fresh).id == fresh

    def test_zero_disables_limits(self, registry, gate, clock):
        manager = SessionManager(registry, gate, SessionSettings(ttl=0, idle_timeout=0), clock=clock)
        sid = manager.create(_identity(), []).session.id
        clock.advance(10**6)
        assert manager.validate(sid).expires_in(clock()) is None

    def test_settings_validation(self):
        with pytest.raises(ConfigError):
            SessionSettings.from_config({"sweep_interval_s": 0})
        with pytest.raises(ConfigError):
            SessionSettings.from_config({"ttl_s": "forever"})


class TestClose:
    def test_close_is_terminal(self, manager):
        sid = manager.create(_identity(), []).session.id
        manager.close(sid, identity_id="agent-7")
        with pytest.raises(SessionNotFound):
            manager.validate(sid)
        with pytest.raises(SessionNotFound):
            manager.close(sid)

    def test_only_owner_may_close(self, manager):
        sid = manager.create(_identity(), []).session.id
        with pytest.raises(AuthorizationError):
            manager.close(sid, identity_id="intruder")
        assert manager.validate(sid).id == sid

    def test_unknown(self, manager):
        with pytest.raises(SessionNotFound):
            manager.validate("nope")


class TestNarrowing:
    def test_narrow_intersects(self, manager):
        sid = manager.create(_identity(Role.ADMIN), ["weather.lookup", "files.write"]).session.id
        session = manager.narrow(sid, "agent-7", ["files.write", "shell.run"])
        assert session.granted == {"files.write"}

    def test_narrow_requires_owner(self, manager):
        sid = manager.create(_identity(), ["weather.lookup"]).session.id
        with pytest.raises(AuthorizationError):
            manager.narrow(sid, "intruder", [])

    def test_revalidate_after_policy_change(self, manager, gate):
        sid = manager.create(_identity(Role.OPERATOR), ["weather.lookup", "shell.run"]).session.id
        gate.reload(PolicySnapshot.from_config({"operator": ["read"]}, version=1))
        assert manager.revalidate() == 1
        assert manager.validate(sid).granted == {"weather.lookup"}
