"""Tests for capstan/capabilities.py -- the copy-on-write capability registry."""

import pytest

from capstan.capabilities import Capability, CapabilityKind, CapabilityRegistry, SideEffect, version_key
from capstan.errors import ConfigError, DuplicateCapability, UnknownCapability
from capstan.rbac import Permission


def _cap(name="weather.lookup", provider="weather", version="1.0.0", scope=("read",), **kw):
    return Capability(
        name=name,
        provider=provider,
        version=version,
        required_scope=Permission.parse_many(scope),
        **kw,
    )


@pytest.fixture()
def registry():
    return CapabilityRegistry(
        [
            _cap(),
            _cap("files.write", provider="fs", scope=("read", "write"), side_effect=SideEffect.MUTATING),
            _cap("files.read", provider="fs"),
        ]
    )


# ---------------------------------------------------------------------------
# Capability descriptor
# ---------------------------------------------------------------------------


class TestCapability:
    def test_requires_name_and_provider(self):
        with pytest.raises(ValueError):
            Capability(name="", provider="x")
        with pytest.raises(ValueError):
            Capability(name="x", provider="")

    def test_schema_is_read_only(self):
        schema = {"type": "object"}
        cap = Capability(name="a", provider="p", input_schema=schema)
        schema["type"] = "array"
        assert cap.input_schema["type"] == "object"
        with pytest.raises(TypeError):
            cap.input_schema["type"] = "string"

    def test_from_dict_defaults(self):
        cap = Capability.from_dict({"name": "kv.get", "provider": "kv"})
        assert cap.version == "1.0.0"
        assert cap.kind is CapabilityKind.TOOL
        assert cap.is_pure
        assert cap.required_scope == frozenset()

    def test_from_dict_bad_scope(self):
        with pytest.raises(ConfigError):
            Capability.from_dict({"name": "kv.get", "provider": "kv", "required_scope": ["root"]})

    def test_to_dict(self):
        d = _cap(scope=("execute", "read")).to_dict()
        assert d["required_scope"] == ["execute", "read"]
        assert d["side_effect"] == "pure"
        assert d["kind"] == "tool"

    def test_mutating_is_not_pure(self):
        assert not _cap(side_effect=SideEffect.MUTATING).is_pure


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_lookup(self, registry):
        assert registry.lookup("files.read").provider == "fs"

    def test_lookup_unknown(self, registry):
        with pytest.raises(UnknownCapability):
            registry.lookup("nope")

    def test_duplicate_rejected(self, registry):
        with pytest.raises(DuplicateCapability):
            registry.register(_cap())

    def test_register_many_is_atomic(self, registry):
        with pytest.raises(DuplicateCapability):
            registry.register_many([_cap("new.one", provider="x"), _cap()])
        assert not registry.has("new.one")

    def test_latest_version_wins(self, registry):
        registry.register(_cap(version="1.10.0", description="newest"))
        registry.register(_cap(version="1.9.0"))
        assert registry.lookup("weather.lookup").version == "1.10.0"
        assert registry.lookup("weather.lookup", "1.9.0").version == "1.9.0"
        with pytest.raises(UnknownCapability):
            registry.lookup("weather.lookup", "2.0.0")

    def test_list_latest_only(self, registry):
        registry.register(_cap(version="2.0.0"))
        assert [c.version for c in registry.list() if c.name == "weather.lookup"] == ["2.0.0"]
        all_versions = [c.version for c in registry.list(latest_only=False) if c.name == "weather.lookup"]
        assert all_versions == ["2.0.0", "1.0.0"]

    def test_list_filter_by_provider(self, registry):
        assert registry.list(provider="fs").names() == ["files.read", "files.write"]

    def test_list_filter_by_scope(self, registry):
        assert registry.list(scope={Permission.READ}).names() == ["files.read", "weather.lookup"]

    def test_query_is_lazy(self, registry):
        query = registry.list(provider="fs")
        registry.register(_cap("files.stat", provider="fs"))
        assert "files.stat" in query.names()

    def test_iteration_sees_snapshot(self, registry):
        it = iter(registry.list())
        first = next(it)
        registry.deregister("weather.lookup")
        names = [first.name] + [c.name for c in it]
        assert names == ["files.read", "files.write", "weather.lookup"]

    def test_deregister_one_version(self, registry):
        registry.register(_cap(version="2.0.0"))
        registry.deregister("weather.lookup", "2.0.0")
        assert registry.lookup("weather.lookup").version == "1.0.0"

    def test_deregister_unknown(self, registry):
        with pytest.raises(UnknownCapability):
            registry.deregister("weather.lookup", "9.9.9")

    def test_deregister_provider(self, registry):
        assert registry.deregister_provider("fs") == 2
        assert registry.names == ["weather.lookup"]

    def test_providers_and_len(self, registry):
        assert registry.providers() == ["fs", "weather"]
        assert len(registry) == 3
        assert "files.read" in registry

    def test_to_dict(self, registry):
        assert set(registry.to_dict()) == {"files.read", "files.write", "weather.lookup"}


def test_version_key_orders_numerically():
    assert sorted(["1.9.0", "1.10.0", "1.2.0"], key=version_key) == ["1.2.0", "1.9.0", "1.10.0"]
