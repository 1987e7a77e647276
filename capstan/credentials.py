"""
Capstan credential validation.

Verifies bearer tokens (signed JWTs) against a trust anchor and produces an
:class:`Identity`.  JWT claims::

    sub   -- Identity id (e.g. ``agent-7``).
    iss   -- Issuer; must be one of the trust anchor's issuers.
    aud   -- Audience (checked only when the anchor sets one).
    role  -- Role name (viewer, operator, admin).
    iat   -- Issued-at timestamp.
    exp   -- Expiration timestamp.

The trust anchor is a frozen :class:`TrustAnchor`.  ``reload`` swaps the
reference in one assignment so an in-flight validation sees either the old
or the new anchor, never a mix.

Which check failed (malformed token, bad signature, expiry, issuer) is
logged here and carried on the exception's ``detail``; the gateway only
ever reports ``AuthenticationFailed``.

Requires ``PyJWT>=2.8.0``.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import jwt

from capstan.errors import ConfigError, ExpiredCredential, InvalidCredential, UntrustedIssuer
from capstan.rbac import Role

logger = logging.getLogger("Capstan.Credentials")

DEFAULT_ISSUER = "capstan"
_SYMMETRIC_ALGORITHMS = ("HS256", "HS384", "HS512")


@dataclass(frozen=True)
class Identity:
    """The authenticated principal behind a request.  Never persisted."""

    id: str
    role: Role
    issued_at: float
    expires_at: float
    issuer: str = DEFAULT_ISSUER

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "issuer": self.issuer,
        }


@dataclass(frozen=True)
class IssuerKey:
    """Verification material for one trusted issuer.

    Exactly one of ``key`` (shared secret or PEM public key) or ``jwks_url``
    must be set.
    """

    issuer: str
    algorithm: str = "HS256"
    key: str = field(default="", repr=False)
    jwks_url: str = ""

    def __post_init__(self):
        if not self.key and not self.jwks_url:
            raise ConfigError(f"Issuer '{self.issuer}' has no key material")


@dataclass(frozen=True)
class TrustAnchor:
    """Immutable set of trusted issuers.

    Attributes:
        issuers:   Mapping of issuer name -> :class:`IssuerKey`.
        audience:  Required ``aud`` claim, or ``None`` to skip the check.
        leeway:    Clock-skew allowance in seconds for ``exp``/``iat``.
    """

    issuers: Mapping[str, IssuerKey] = field(default_factory=dict)
    audience: Optional[str] = None
    leeway: float = 0.0

    @classmethod
    def from_config(cls, auth_cfg: Optional[Mapping[str, Any]] = None) -> TrustAnchor:
        """Build an anchor from the ``auth`` config section.

        Each issuer entry may give ``secret``, ``secret_env`` (name of an env
        var holding the secret), ``public_key_file`` or ``jwks_url``.  With no
        issuers configured, ``CAPSTAN_JWT_SECRET`` / ``CAPSTAN_JWT_ISSUER``
        define a single HS256 issuer.

        Raises:
            ConfigError: If an issuer has no usable key material.
        """
        auth_cfg = auth_cfg or {}
        issuers: Dict[str, IssuerKey] = {}
        for entry in auth_cfg.get("issuers") or []:
            name = entry.get("issuer") or DEFAULT_ISSUER
            algorithm = entry.get("algorithm", "HS256")
            key = entry.get("secret") or ""
            if not key and entry.get("secret_env"):
                key = os.getenv(entry["secret_env"], "")
            if not key and entry.get("public_key_file"):
                try:
                    with open(entry["public_key_file"]) as f:
                        key = f.read()
                except OSError as exc:
                    raise ConfigError(f"Cannot read public key for issuer '{name}': {exc}") from exc
            issuers[name] = IssuerKey(
                issuer=name,
                algorithm=algorithm,
                key=key,
                jwks_url=entry.get("jwks_url", ""),
            )

        if not issuers:
            secret = os.getenv("CAPSTAN_JWT_SECRET", "")
            if secret:
                name = os.getenv("CAPSTAN_JWT_ISSUER", DEFAULT_ISSUER)
                issuers[name] = IssuerKey(issuer=name, algorithm="HS256", key=secret)
            else:
                logger.warning("No trusted issuers configured -- every credential will be rejected")

        return cls(
            issuers=issuers,
            audience=auth_cfg.get("audience"),
            leeway=float(auth_cfg.get("leeway_s", 0.0)),
        )

    @property
    def requires_fetch(self) -> bool:
        """True if any issuer resolves keys over the network."""
        return any(k.jwks_url for k in self.issuers.values())


class CredentialValidator:
    """Verify bearer tokens against the current trust anchor.

    Args:
        anchor: Initial trust anchor.
    """

    def __init__(self, anchor: Optional[TrustAnchor] = None):
        self._anchor = anchor or TrustAnchor()
        self._jwks_clients: Dict[str, jwt.PyJWKClient] = {}

    @property
    def anchor(self) -> TrustAnchor:
        return self._anchor

    @property
    def requires_fetch(self) -> bool:
        return self._anchor.requires_fetch

    def reload(self, anchor: TrustAnchor) -> None:
        """Atomically replace the trust anchor."""
        self._anchor = anchor
        self._jwks_clients = {}
        logger.info("Trust anchor reloaded (%d issuer(s))", len(anchor.issuers))

    def validate(self, credential: str) -> Identity:
        """Verify *credential* and return the identity it asserts.

        Args:
            credential: Raw JWT, or ``"Bearer <jwt>"``.

        Raises:
            InvalidCredential:  Malformed token, bad signature, missing claims, unknown role.
            ExpiredCredential:  ``exp`` is in the past.
            UntrustedIssuer:    ``iss`` is not in the trust anchor.
        """
        anchor = self._anchor
        token = _strip_bearer(credential)
        if not token:
            raise self._fail(InvalidCredential("empty credential"))

        try:
            unverified = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            raise self._fail(InvalidCredential(f"malformed token: {exc}")) from exc

        issuer_name = unverified.get("iss")
        issuer = anchor.issuers.get(issuer_name) if isinstance(issuer_name, str) else None
        if issuer is None:
            raise self._fail(UntrustedIssuer(f"issuer {issuer_name!r} is not trusted"))

        key, algorithm = self._resolve_key(issuer, token)
        options: Dict[str, Any] = {"require": ["exp", "iat", "sub"]}
        if anchor.audience is None:
            options["verify_aud"] = False

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=anchor.audience,
                issuer=issuer.issuer,
                leeway=anchor.leeway,
                options=options,
            )
        except jwt.ExpiredSignatureError as exc:
            raise self._fail(ExpiredCredential(f"token for {unverified.get('sub')!r} expired")) from exc
        except jwt.PyJWTError as exc:
            raise self._fail(InvalidCredential(f"verification failed: {exc}")) from exc

        try:
            role = Role.parse(claims.get("role", ""))
        except ValueError as exc:
            raise self._fail(InvalidCredential(f"unknown role {claims.get('role')!r}")) from exc

        identity = Identity(
            id=str(claims["sub"]),
            role=role,
            issued_at=float(claims["iat"]),
            expires_at=float(claims["exp"]),
            issuer=issuer.issuer,
        )
        logger.debug("Validated credential for %s (role=%s)", identity.id, role.value)
        return identity

    def _resolve_key(self, issuer: IssuerKey, token: str) -> Tuple[Any, str]:
        if not issuer.jwks_url:
            return issuer.key, issuer.algorithm
        client = self._jwks_clients.get(issuer.issuer)
        if client is None:
            client = jwt.PyJWKClient(issuer.jwks_url, cache_keys=True)
            self._jwks_clients[issuer.issuer] = client
        try:
            signing_key = client.get_signing_key_from_jwt(token)
        except jwt.PyJWTError as exc:
            raise self._fail(InvalidCredential(f"signing key lookup failed: {exc}")) from exc
        return signing_key.key, issuer.algorithm

    @staticmethod
    def _fail(exc: Exception) -> Exception:
        logger.warning("Credential rejected: %s (%s)", type(exc).__name__, exc)
        return exc


class TokenIssuer:
    """Issue signed tokens for a trusted issuer (operators, tests, the CLI).

    Args:
        secret:     Signing key (HMAC secret or PEM private key).
        issuer:     ``iss`` claim value.
        algorithm:  JWT signing algorithm (default: HS256).
        audience:   Optional ``aud`` claim.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        issuer: Optional[str] = None,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
    ):
        self.secret = secret or os.getenv("CAPSTAN_JWT_SECRET", "")
        self.issuer = issuer or os.getenv("CAPSTAN_JWT_ISSUER", DEFAULT_ISSUER)
        self.algorithm = algorithm
        self.audience = audience

    def issue(self, subject: str, role: Role = Role.VIEWER, ttl_seconds: int = 3600) -> str:
        """Issue a signed JWT.

        Raises:
            ConfigError: If no signing secret is configured.
        """
        if not self.secret:
            raise ConfigError("CAPSTAN_JWT_SECRET is not configured")
        now = int(time.time())
        claims: Dict[str, Any] = {
            "sub": subject,
            "iss": self.issuer,
            "role": Role.parse(role).value,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        if self.audience:
            claims["aud"] = self.audience
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)
        logger.info("Issued token for %s (role=%s, ttl=%ds)", subject, claims["role"], ttl_seconds)
        return token

    def anchor(self) -> TrustAnchor:
        """Return a trust anchor that accepts this issuer's symmetric tokens."""
        if self.algorithm not in _SYMMETRIC_ALGORITHMS:
            raise ConfigError("anchor() only supports symmetric algorithms")
        key = IssuerKey(issuer=self.issuer, algorithm=self.algorithm, key=self.secret)
        return TrustAnchor(issuers={self.issuer: key}, audience=self.audience)


def _strip_bearer(credential: Optional[str]) -> str:
    if not credential:
        return ""
    credential = credential.strip()
    if credential[:7].lower() == "bearer ":
        return credential[7:].strip()
    return credential
