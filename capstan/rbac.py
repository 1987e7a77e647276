"""
Capstan RBAC (Role-Based Access Control).

Implements the 3-tier role hierarchy::

    VIEWER   -- read-only discovery and pure lookups.
    OPERATOR -- may execute tools.
    ADMIN    -- full access, including configuration reloads.

Each role maps to a set of permission tokens.  A capability declares the
tokens it requires, and authorization is a plain subset comparison::

    capability.required_scope <= policy.permissions_for(identity.role)

The role table is a frozen :class:`PolicySnapshot`.  Reloading it swaps the
snapshot reference held by the :class:`AuthorizationGate`; readers never see
a half-updated table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Mapping, Optional

from capstan.errors import ConfigError, InsufficientPermission

if TYPE_CHECKING:
    from capstan.capabilities import Capability
    from capstan.credentials import Identity

logger = logging.getLogger("Capstan.RBAC")


class Permission(str, Enum):
    """Closed set of permission tokens."""

    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    ADMIN = "admin"

    @classmethod
    def parse_many(cls, names: Iterable[str]) -> FrozenSet[Permission]:
        """Parse permission names, rejecting anything outside the closed set.

        Raises:
            ConfigError: If a name is not a known permission token.
        """
        result = set()
        for name in names:
            if isinstance(name, cls):
                result.add(name)
                continue
            try:
                result.add(cls(str(name).strip().lower()))
            except ValueError as exc:
                raise ConfigError(f"Unknown permission token: {name!r}") from exc
        return frozenset(result)


class Role(str, Enum):
    """Closed set of identity roles."""

    VIEWER = "viewer"
    OPERATOR = "operator"
    ADMIN = "admin"

    @classmethod
    def parse(cls, name: str) -> Role:
        """Parse a role name (case-insensitive).

        Raises:
            ValueError: If the name is not a known role.
        """
        if isinstance(name, cls):
            return name
        return cls(str(name).strip().lower())


DEFAULT_ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.VIEWER: frozenset({Permission.READ}),
    Role.OPERATOR: frozenset({Permission.READ, Permission.EXECUTE}),
    Role.ADMIN: frozenset(Permission),
}


def to_strings(permissions: Iterable[Permission]) -> List[str]:
    """Convert permission tokens to a sorted list of names."""
    return sorted(p.value for p in permissions)


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable role -> permission mapping.

    Attributes:
        roles:    Mapping of role to its permission tokens.
        version:  Monotonic counter bumped on every reload, for logging.
    """

    roles: Mapping[Role, FrozenSet[Permission]] = field(
        default_factory=lambda: dict(DEFAULT_ROLE_PERMISSIONS)
    )
    version: int = 0

    @classmethod
    def from_config(cls, roles_cfg: Optional[Mapping[str, Iterable[str]]], version: int = 0) -> PolicySnapshot:
        """Build a snapshot from the ``roles`` config section.

        Roles missing from the section keep their default permissions.

        Raises:
            ConfigError: On unknown role names or permission tokens.
        """
        roles: Dict[Role, FrozenSet[Permission]] = dict(DEFAULT_ROLE_PERMISSIONS)
        for role_name, perms in (roles_cfg or {}).items():
            try:
                role = Role.parse(role_name)
            except ValueError as exc:
                raise ConfigError(f"Unknown role in policy: {role_name!r}") from exc
            if isinstance(perms, str):
                perms = [perms]
            roles[role] = Permission.parse_many(perms)
        return cls(roles=roles, version=version)

    def permissions_for(self, role: Role) -> Optional[FrozenSet[Permission]]:
        """Return the permission set for *role*, or ``None`` if the role is unmapped."""
        return self.roles.get(role)

    def to_dict(self) -> Dict[str, List[str]]:
        return {role.value: to_strings(perms) for role, perms in self.roles.items()}


class AuthorizationGate:
    """Checks an identity's role against a capability's required scope.

    Args:
        policy: Initial policy snapshot (defaults to the built-in table).
    """

    def __init__(self, policy: Optional[PolicySnapshot] = None):
        self._policy = policy or PolicySnapshot()

    @property
    def policy(self) -> PolicySnapshot:
        return self._policy

    def reload(self, policy: PolicySnapshot) -> None:
        """Atomically replace the policy snapshot."""
        previous = self._policy
        self._policy = policy
        logger.info("Policy reloaded (version %d -> %d)", previous.version, policy.version)

    def permissions_for(self, role: Role) -> FrozenSet[Permission]:
        return self._policy.permissions_for(role) or frozenset()

    def knows_role(self, role: Role) -> bool:
        return self._policy.permissions_for(role) is not None

    def missing(self, role: Role, capability: Capability) -> FrozenSet[Permission]:
        """Return the required tokens *role* does not hold."""
        return frozenset(capability.required_scope) - self.permissions_for(role)

    def permits(self, role: Role, capability: Capability) -> bool:
        return not self.missing(role, capability)

    def authorize(self, identity: Identity, capability: Capability) -> None:
        """Raise :class:`InsufficientPermission` unless *identity* may use *capability*.

        Pure: callers log the denial.  The missing tokens are attached to the
        exception and are never part of the caller-facing error.
        """
        missing = self.missing(identity.role, capability)
        if missing:
            names = to_strings(missing)
            raise InsufficientPermission(
                f"role '{identity.role.value}' lacks {names} for '{capability.name}'",
                missing=frozenset(names),
            )
