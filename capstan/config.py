"""
Capstan broker configuration.

A broker is described by one YAML file (default ``broker.yaml``, override
with ``CAPSTAN_CONFIG``)::

    metadata:
      name: capstan-dev
    auth:
      audience: capstan
      leeway_s: 5
      issuers:
        - issuer: capstan
          algorithm: HS256
          secret_env: CAPSTAN_JWT_SECRET
    roles:
      viewer: [read]
      operator: [read, execute]
      admin: [read, write, execute, admin]
    rate_limit:
      quota: 60
      window_s: 60
      scope: identity
    sessions:
      ttl_s: 3600
      idle_timeout_s: 900
    invocation:
      default_timeout_s: 30
      max_timeout_s: 300
      retry_backoff_s: 0.1
    providers:
      - id: local
        transport: inprocess
      - id: weather
        transport: http
        base_url: http://weather.internal:9000
    capabilities:
      - name: weather.lookup
        provider: weather
        required_scope: [read]
        side_effect: pure
        input_schema: {type: object, required: [city]}

Call :func:`validate_broker_config` before building anything so a typo
fails at startup with a readable message instead of deep inside a request.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from capstan.adapters import available_transports
from capstan.capabilities import Capability, CapabilityKind, SideEffect
from capstan.credentials import TrustAnchor
from capstan.errors import ConfigError
from capstan.ratelimit import RateLimitSettings
from capstan.rbac import Permission, PolicySnapshot, Role
from capstan.sessions import SessionSettings

logger = logging.getLogger("Capstan.Config")

DEFAULT_CONFIG_PATH = "broker.yaml"

KNOWN_SECTIONS = (
    "metadata",
    "auth",
    "roles",
    "rate_limit",
    "sessions",
    "invocation",
    "providers",
    "capabilities",
)


def load_dotenv_if_available() -> None:
    """Load env files: ~/.capstan/env (primary) and local .env (fallback).

    Variables that are already set are never overridden.
    """
    from dotenv import find_dotenv, load_dotenv

    capstan_env = os.path.expanduser("~/.capstan/env")
    if os.path.exists(capstan_env):
        load_dotenv(capstan_env, override=False)
        logger.debug("Loaded ~/.capstan/env")
    local_env = find_dotenv(usecwd=True)
    if local_env and load_dotenv(local_env, override=False):
        logger.debug("Loaded %s", local_env)


def config_path(path: Optional[str] = None) -> str:
    return path or os.getenv("CAPSTAN_CONFIG", DEFAULT_CONFIG_PATH)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read the broker YAML file.

    An empty file yields an empty config (every section takes its defaults).

    Raises:
        ConfigError: If the file is missing or is not valid YAML.
    """
    path = config_path(path)
    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except FileNotFoundError as exc:
        logger.error("Config file not found: %s", path)
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    config = config or {}
    name = (config.get("metadata") or {}).get("name", "capstan") if isinstance(config, dict) else "?"
    logger.info("Loaded configuration: %s (%s)", name, path)
    return config


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_number(errors: List[str], section: dict, key: str, where: str, minimum: float = 0.0, strict=False):
    if key not in section:
        return
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append(f"'{where}.{key}' must be a number, got {value!r}")
    elif value < minimum or (strict and value == minimum):
        op = ">" if strict else ">="
        errors.append(f"'{where}.{key}' must be {op} {minimum:g}, got {value!r}")


def _check_permissions(errors: List[str], perms: Any, where: str) -> None:
    if isinstance(perms, str):
        perms = [perms]
    if not isinstance(perms, list):
        errors.append(f"'{where}' must be a list of permission tokens")
        return
    valid = {p.value for p in Permission}
    for token in perms:
        if str(token).lower() not in valid:
            errors.append(f"Unknown permission token {token!r} in '{where}' (valid: {sorted(valid)})")


def _check_role(errors: List[str], name: Any, where: str) -> None:
    try:
        Role.parse(name)
    except ValueError:
        errors.append(f"Unknown role {name!r} in '{where}' (valid: {[r.value for r in Role]})")


def validate_broker_config(config: Any) -> Tuple[bool, List[str]]:
    """Validate a loaded broker config dict.

    Returns:
        A ``(is_valid, errors)`` tuple.  ``is_valid`` is ``True`` only when
        ``errors`` is empty.  Each entry in ``errors`` is a human-readable
        description of what is missing or wrong.

    Example::

        ok, errors = validate_broker_config(config)
        if not ok:
            for msg in errors:
                logger.error("Config error: %s", msg)
    """
    if not isinstance(config, dict):
        return False, ["Config must be a mapping (check YAML syntax)"]

    errors: List[str] = []

    for key in config:
        if key not in KNOWN_SECTIONS:
            errors.append(f"Unknown top-level section: '{key}'")

    for key in ("metadata", "auth", "roles", "rate_limit", "sessions", "invocation"):
        if key in config and config[key] is not None and not isinstance(config[key], dict):
            errors.append(f"'{key}' must be a mapping (dict), not a scalar")

    # ── roles ────────────────────────────────────────────────────────────────
    roles = config.get("roles")
    if isinstance(roles, dict):
        for role_name, perms in roles.items():
            _check_role(errors, role_name, "roles")
            _check_permissions(errors, perms, f"roles.{role_name}")

    # ── auth ─────────────────────────────────────────────────────────────────
    auth = config.get("auth")
    if isinstance(auth, dict):
        _check_number(errors, auth, "leeway_s", "auth")
        issuers = auth.get("issuers") or []
        if not isinstance(issuers, list):
            errors.append("'auth.issuers' must be a list")
        else:
            for i, entry in enumerate(issuers):
                if not isinstance(entry, dict):
                    errors.append(f"'auth.issuers[{i}]' must be a mapping")
                elif not any(entry.get(k) for k in ("secret", "secret_env", "public_key_file", "jwks_url")):
                    errors.append(
                        f"'auth.issuers[{i}]' needs one of secret, secret_env, public_key_file, jwks_url"
                    )

    # ── rate_limit ───────────────────────────────────────────────────────────
    rate = config.get("rate_limit")
    if isinstance(rate, dict):
        _check_number(errors, rate, "quota", "rate_limit")
        _check_number(errors, rate, "window_s", "rate_limit", strict=True)
        _check_number(errors, rate, "max_in_flight", "rate_limit")
        scope = rate.get("scope", "identity")
        if scope not in ("identity", "identity_capability"):
            errors.append(f"'rate_limit.scope' must be identity or identity_capability, got {scope!r}")
        for sub_key in ("capabilities", "roles"):
            sub = rate.get(sub_key) or {}
            if not isinstance(sub, dict):
                errors.append(f"'rate_limit.{sub_key}' must be a mapping")
                continue
            for name, override in sub.items():
                if sub_key == "roles":
                    _check_role(errors, name, "rate_limit.roles")
                if not isinstance(override, dict):
                    errors.append(f"'rate_limit.{sub_key}.{name}' must be a mapping")
                    continue
                _check_number(errors, override, "quota", f"rate_limit.{sub_key}.{name}")
                _check_number(errors, override, "window_s", f"rate_limit.{sub_key}.{name}", strict=True)

    # ── sessions / invocation ────────────────────────────────────────────────
    sessions = config.get("sessions")
    if isinstance(sessions, dict):
        _check_number(errors, sessions, "ttl_s", "sessions")
        _check_number(errors, sessions, "idle_timeout_s", "sessions")
        _check_number(errors, sessions, "sweep_interval_s", "sessions", strict=True)

    invocation = config.get("invocation")
    if isinstance(invocation, dict):
        _check_number(errors, invocation, "default_timeout_s", "invocation", strict=True)
        _check_number(errors, invocation, "max_timeout_s", "invocation", strict=True)
        _check_number(errors, invocation, "retry_backoff_s", "invocation")
        default = invocation.get("default_timeout_s")
        maximum = invocation.get("max_timeout_s")
        if isinstance(default, (int, float)) and isinstance(maximum, (int, float)) and default > maximum:
            errors.append("'invocation.default_timeout_s' must not exceed 'invocation.max_timeout_s'")

    # ── providers ────────────────────────────────────────────────────────────
    provider_ids = set()
    providers = config.get("providers") or []
    if not isinstance(providers, list):
        errors.append("'providers' must be a list")
        providers = []
    transports = available_transports()
    for i, entry in enumerate(providers):
        if not isinstance(entry, dict):
            errors.append(f"'providers[{i}]' must be a mapping")
            continue
        pid = entry.get("id")
        if not pid:
            errors.append(f"'providers[{i}]' is missing 'id'")
            continue
        if pid in provider_ids:
            errors.append(f"Duplicate provider id: '{pid}'")
        provider_ids.add(pid)
        transport = str(entry.get("transport", "inprocess")).lower()
        if transport not in transports:
            errors.append(f"Provider '{pid}' uses unknown transport '{transport}' (available: {transports})")
        elif transport == "http" and not entry.get("base_url"):
            errors.append(f"Provider '{pid}' (http) is missing 'base_url'")

    # ── capabilities ─────────────────────────────────────────────────────────
    capabilities = config.get("capabilities") or []
    if not isinstance(capabilities, list):
        errors.append("'capabilities' must be a list")
        capabilities = []
    seen = set()
    for i, entry in enumerate(capabilities):
        if not isinstance(entry, dict):
            errors.append(f"'capabilities[{i}]' must be a mapping")
            continue
        name = entry.get("name")
        if not name:
            errors.append(f"'capabilities[{i}]' is missing 'name'")
            continue
        key = (name, str(entry.get("version", "1.0.0")))
        if key in seen:
            errors.append(f"Duplicate capability: '{name}@{key[1]}'")
        seen.add(key)
        provider = entry.get("provider")
        if not provider:
            errors.append(f"Capability '{name}' is missing 'provider'")
        elif provider not in provider_ids:
            errors.append(f"Capability '{name}' refers to unknown provider '{provider}'")
        _check_permissions(errors, entry.get("required_scope", []), f"capabilities.{name}.required_scope")
        if entry.get("side_effect", "pure") not in [s.value for s in SideEffect]:
            errors.append(f"Capability '{name}': side_effect must be pure or mutating")
        if entry.get("kind", "tool") not in [k.value for k in CapabilityKind]:
            errors.append(f"Capability '{name}': kind must be tool or resource")
        for schema_key in ("input_schema", "output_schema"):
            if schema_key in entry and not isinstance(entry[schema_key], dict):
                errors.append(f"Capability '{name}': {schema_key} must be a mapping")

    return len(errors) == 0, errors


# ---------------------------------------------------------------------------
# Typed settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvocationSettings:
    """Deadline and retry policy for the dispatcher.

    Attributes:
        default_timeout:   Deadline applied when the caller gives none (seconds).
        max_timeout:       Upper bound for caller-supplied timeouts (seconds).
        retry_backoff:     Pause before the single retry of a pure capability.
        validate_payloads: Check payloads against the capability input schema.
    """

    default_timeout: float = 30.0
    max_timeout: float = 300.0
    retry_backoff: float = 0.1
    validate_payloads: bool = True

    def __post_init__(self):
        if self.default_timeout <= 0 or self.max_timeout <= 0:
            raise ConfigError("invocation timeouts must be > 0")
        if self.retry_backoff < 0:
            raise ConfigError("invocation.retry_backoff_s must be >= 0")

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> InvocationSettings:
        cfg = cfg or {}
        try:
            default = float(os.getenv("CAPSTAN_DEFAULT_TIMEOUT") or cfg.get("default_timeout_s", 30.0))
            return cls(
                default_timeout=default,
                max_timeout=max(default, float(cfg.get("max_timeout_s", 300.0))),
                retry_backoff=float(cfg.get("retry_backoff_s", 0.1)),
                validate_payloads=bool(cfg.get("validate_payloads", True)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid invocation section: {exc}") from exc

    def clamp(self, requested: Optional[float]) -> float:
        """Return the effective timeout for a caller-supplied value."""
        if requested is None or requested <= 0:
            return self.default_timeout
        return min(float(requested), self.max_timeout)


@dataclass(frozen=True)
class BrokerSettings:
    """Everything a :class:`~capstan.broker.Broker` is built from."""

    name: str = "capstan"
    policy: PolicySnapshot = field(default_factory=PolicySnapshot)
    anchor: TrustAnchor = field(default_factory=TrustAnchor)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    invocation: InvocationSettings = field(default_factory=InvocationSettings)
    providers: Tuple[Dict[str, Any], ...] = ()
    capabilities: Tuple[Capability, ...] = ()

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]], version: int = 0) -> BrokerSettings:
        """Validate *config* and build typed settings from it.

        Raises:
            ConfigError: Listing every validation problem found.
        """
        config = config or {}
        ok, errors = validate_broker_config(config)
        if not ok:
            raise ConfigError("; ".join(errors))
        try:
            capabilities = tuple(Capability.from_dict(c) for c in config.get("capabilities") or [])
        except (KeyError, ValueError) as exc:
            raise ConfigError(f"Invalid capability entry: {exc}") from exc
        return cls(
            name=(config.get("metadata") or {}).get("name", "capstan"),
            policy=PolicySnapshot.from_config(config.get("roles"), version=version),
            anchor=TrustAnchor.from_config(config.get("auth")),
            rate_limit=RateLimitSettings.from_config(config.get("rate_limit")),
            sessions=SessionSettings.from_config(config.get("sessions")),
            invocation=InvocationSettings.from_config(config.get("invocation")),
            providers=tuple(dict(p) for p in config.get("providers") or []),
            capabilities=capabilities,
        )
