"""Tests for capstan/broker.py -- wiring, registration, reload and maintenance."""

import asyncio
import copy

import pytest

from capstan.adapters import HttpAdapter, InProcessAdapter
from capstan.broker import Broker
from capstan.capabilities import Capability
from capstan.config import BrokerSettings
from capstan.envelope import InvocationRequest
from capstan.errors import ConfigError, DuplicateCapability, UnknownCapability
from capstan.rbac import Role
from capstan.sessions import SessionSettings

from conftest import SECRET

CONFIG = {
    "metadata": {"name": "test-broker"},
    "auth": {"issuers": [{"issuer": "capstan", "secret": SECRET}]},
    "providers": [{"id": "local", "transport": "inprocess"}],
    "capabilities": [
        {"name": "kv.get", "provider": "local", "required_scope": ["read"]},
        {"name": "kv.put", "provider": "local", "required_scope": ["read", "execute"], "side_effect": "mutating"},
    ],
}


@pytest.fixture()
def broker(clock, metrics):
    b = Broker.from_config(copy.deepcopy(CONFIG), clock=clock, metrics=metrics)
    store = {}
    b.bind("kv.get", lambda key: store.get(key))
    b.bind("kv.put", lambda key, value: store.__setitem__(key, value))
    return b


def _negotiate(broker, issuer, caps, role=Role.OPERATOR):
    return asyncio.run(broker.dispatcher.negotiate(issuer.issue("agent", role), caps))


class TestConstruction:
    def test_from_config(self, broker):
        assert broker.settings.name == "test-broker"
        assert broker.registry.names == ["kv.get", "kv.put"]
        assert isinstance(broker.dispatcher.adapter_for("local"), InProcessAdapter)

    def test_from_file(self, tmp_path, clock, metrics):
        path = tmp_path / "broker.yaml"
        path.write_text("metadata:\n  name: from-file\n")
        assert Broker.from_file(str(path), clock=clock, metrics=metrics).settings.name == "from-file"

    def test_invalid_config(self):
        with pytest.raises(ConfigError):
            Broker.from_config({"providers": [{"id": "x", "transport": "smoke-signals"}]})

    def test_empty_broker(self, metrics):
        broker = Broker(metrics=metrics)
        assert len(broker.registry) == 0
        assert broker.dispatcher.adapters == {}


class TestRegistration:
    def test_end_to_end_with_bound_config_capability(self, broker, issuer):
        sid = _negotiate(broker, issuer, ["kv.get", "kv.put"]).session.id
        put = asyncio.run(broker.dispatcher.invoke(InvocationRequest(sid, "kv.put", {"key": "k", "value": 7})))
        get = asyncio.run(broker.dispatcher.invoke(InvocationRequest(sid, "kv.get", {"key": "k"})))
        assert put.ok
        assert get.output == 7

    def test_register_tool_uses_docstring(self, broker):
        def ping():
            """Reply with pong.

            Longer text is not part of the description.
            """
            return "pong"

        cap = broker.register_tool("ping", ping)
        assert cap.description == "Reply with pong."
        assert broker.local_adapter().bound == ["kv.get", "kv.put", "ping"]

    def test_duplicate_tool(self, broker):
        with pytest.raises(DuplicateCapability):
            broker.register_tool("kv.get", lambda key: None)

    def test_new_version(self, broker):
        broker.register_tool("kv.get", lambda key: "v2", version="2.0.0")
        assert broker.registry.lookup("kv.get").version == "2.0.0"

    def test_deregister_tool(self, broker):
        broker.deregister_tool("kv.get")
        assert not broker.registry.has("kv.get")
        assert "kv.get" not in broker.local_adapter().bound
        with pytest.raises(UnknownCapability):
            broker.deregister_tool("kv.get")

    def test_local_adapter_refuses_other_transport(self, broker):
        adapter = HttpAdapter("remote", {"base_url": "http://remote"})
        broker.register_provider(adapter, [Capability("remote.echo", "remote")])
        with pytest.raises(ConfigError):
            broker.register_tool("remote.other", lambda: 1, provider="remote")
        asyncio.run(adapter.close())

    def test_register_provider_checks_ownership(self, broker):
        with pytest.raises(ConfigError):
            broker.register_provider(InProcessAdapter("a"), [Capability("x", "b")])
        assert not broker.registry.has("x")


class TestReload:
    def test_policy_change_narrows_sessions(self, broker, issuer):
        sid = _negotiate(broker, issuer, ["kv.get", "kv.put"]).session.id
        new = copy.deepcopy(CONFIG)
        new["roles"] = {"operator": ["read"]}
        outcome = broker.reload(new)
        assert outcome == {"policy_version": 1, "revoked_grants": 1}
        assert broker.sessions.validate(sid).granted == {"kv.get"}

        reply = asyncio.run(broker.dispatcher.invoke(InvocationRequest(sid, "kv.put", {"key": "k", "value": 1})))
        assert reply.error_kind == "AuthorizationFailed"

    def test_sessions_survive_reload(self, broker, issuer):
        sid = _negotiate(broker, issuer, ["kv.get"]).session.id
        broker.reload(copy.deepcopy(CONFIG))
        assert broker.sessions.validate(sid).granted == {"kv.get"}

    def test_invalid_reload_changes_nothing(self, broker):
        bad = copy.deepcopy(CONFIG)
        bad["roles"] = {"operator": ["sudo"]}
        with pytest.raises(ConfigError):
            broker.reload(bad)
        assert broker.gate.policy.version == 0
        assert broker.registry.names == ["kv.get", "kv.put"]

    def test_reconciles_capabilities_and_providers(self, broker):
        broker.register_tool("ping", lambda: "pong")
        new = copy.deepcopy(CONFIG)
        new["providers"].append({"id": "search", "transport": "http", "base_url": "http://search:9000"})
        new["capabilities"] = [
            CONFIG["capabilities"][0],
            {"name": "search.web", "provider": "search", "required_scope": ["read"]},
        ]
        broker.reload(new)
        assert broker.registry.names == ["kv.get", "ping", "search.web"]
        assert isinstance(broker.dispatcher.adapter_for("search"), HttpAdapter)
        asyncio.run(broker.close())

    def test_reload_rate_limits(self, broker):
        new = copy.deepcopy(CONFIG)
        new["rate_limit"] = {"quota": 2, "window_s": 10}
        broker.reload(new)
        assert broker.limiter.settings.default.limit == 2


class TestMaintenance:
    def test_maintain_sweeps_and_updates_gauges(self, broker, issuer, clock, metrics):
        _negotiate(broker, issuer, ["kv.get"])
        _negotiate(broker, issuer, ["kv.get"])
        assert metrics.gauge("capstan_sessions_active").value() == 0
        broker.maintain()
        assert metrics.gauge("capstan_sessions_active").value() == 2
        assert metrics.gauge("capstan_capabilities_registered").value() == 2

        clock.advance(broker.sessions.settings.idle_timeout + 1)
        assert broker.maintain()["sessions_swept"] == 2
        assert metrics.gauge("capstan_sessions_active").value() == 0

    def test_background_loop(self, issuer, clock, metrics):
        settings = BrokerSettings(
            anchor=issuer.anchor(),
            sessions=SessionSettings(ttl=0, idle_timeout=10, sweep_interval=0.02),
        )
        broker = Broker(settings, clock=clock, metrics=metrics)
        broker.register_tool("ping", lambda: "pong")

        async def run():
            await broker.start()
            await broker.start()
            assert broker.running
            await broker.dispatcher.negotiate(issuer.issue("agent", Role.VIEWER), ["ping"])
            clock.advance(11)
            await asyncio.sleep(0.1)
            swept = len(broker.sessions)
            await broker.stop()
            return swept

        assert asyncio.run(run()) == 0
        assert not broker.running

    def test_health(self, broker):
        health = broker.health()
        assert health["name"] == "test-broker"
        assert health["running"] is False
        assert health["capabilities"] == 2
        assert health["providers"][0]["provider"] == "local"
        assert health["rate_limit"]["quota"] == 60
