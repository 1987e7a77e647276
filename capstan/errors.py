"""
Capstan error taxonomy.

Every failure the broker can report is a :class:`BrokerError`.  Each class
carries two names:

    kind         -- the precise internal kind, logged server-side only.
    public_kind  -- the stable machine-readable kind returned to callers.

Several internal kinds collapse onto one public kind so that an untrusted
caller never learns *which* check failed::

    InvalidCredential / ExpiredCredential / UntrustedIssuer -> AuthenticationFailed
    InsufficientPermission / NotGranted                     -> AuthorizationFailed
    SessionExpired / SessionNotFound                        -> SessionInvalid

Only :class:`RateLimited` discloses extra data (``retry_after``).  The
``detail`` attribute holds internal context (missing scopes, downstream
error text) and must never be serialised to a caller; use
:meth:`BrokerError.to_error_info` for that.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Optional


class BrokerError(Exception):
    """Base class for all broker failures."""

    kind: str = "BrokerError"
    public_kind: str = "InternalError"
    public_message: str = "Internal broker error"
    status: int = 500

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(detail or self.public_message)

    def to_error_info(self) -> Dict[str, Any]:
        """Return the caller-safe error payload."""
        return {"kind": self.public_kind, "message": self.public_message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.detail!r})"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthenticationError(BrokerError):
    kind = "AuthenticationError"
    public_kind = "AuthenticationFailed"
    public_message = "Authentication failed"
    status = 401


class InvalidCredential(AuthenticationError):
    kind = "InvalidCredential"


class ExpiredCredential(AuthenticationError):
    kind = "ExpiredCredential"


class UntrustedIssuer(AuthenticationError):
    kind = "UntrustedIssuer"


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class AuthorizationError(BrokerError):
    kind = "AuthorizationError"
    public_kind = "AuthorizationFailed"
    public_message = "Not authorized for this capability"
    status = 403


class InsufficientPermission(AuthorizationError):
    """The identity's role lacks one or more permission tokens.

    ``missing`` names the absent tokens for logging only.
    """

    kind = "InsufficientPermission"

    def __init__(self, detail: str = "", missing: Optional[FrozenSet[str]] = None):
        super().__init__(detail)
        self.missing: FrozenSet[str] = frozenset(missing or ())


class NotGranted(AuthorizationError):
    """The session never negotiated access to the capability."""

    kind = "NotGranted"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class UnknownCapability(BrokerError):
    kind = "UnknownCapability"
    public_kind = "UnknownCapability"
    public_message = "Unknown capability"
    status = 404


class DuplicateCapability(BrokerError):
    kind = "DuplicateCapability"
    public_kind = "DuplicateCapability"
    public_message = "Capability already registered"
    status = 409


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionError(BrokerError):
    kind = "SessionError"
    public_kind = "SessionInvalid"
    public_message = "Session is invalid or has expired"
    status = 401


class SessionExpired(SessionError):
    kind = "SessionExpired"


class SessionNotFound(SessionError):
    kind = "SessionNotFound"


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


class RateLimited(BrokerError):
    """Admission rejected; ``retry_after`` (seconds) is safe to disclose."""

    kind = "RateLimited"
    public_kind = "RateLimited"
    public_message = "Rate limit exceeded"
    status = 429

    def __init__(self, retry_after: float, detail: str = ""):
        super().__init__(detail)
        self.retry_after = max(0.0, float(retry_after))

    def to_error_info(self) -> Dict[str, Any]:
        info = super().to_error_info()
        info["retry_after"] = round(self.retry_after, 3)
        return info


class InvalidPayload(BrokerError):
    kind = "InvalidPayload"
    public_kind = "InvalidPayload"
    public_message = "Payload does not match the capability input schema"
    status = 422


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


class InvocationTimeout(BrokerError):
    kind = "TimeoutError"
    public_kind = "TimeoutError"
    public_message = "Invocation timed out"
    status = 504


class AdapterError(BrokerError):
    """Any downstream provider failure.  The provider's text stays in ``detail``."""

    kind = "AdapterError"
    public_kind = "AdapterError"
    public_message = "Capability provider failed"
    status = 502


class Cancelled(BrokerError):
    kind = "Cancelled"
    public_kind = "Cancelled"
    public_message = "Invocation was cancelled"
    status = 499


class ConfigError(BrokerError):
    kind = "ConfigError"
    public_kind = "ConfigError"
    public_message = "Broker configuration is invalid"
    status = 500


# Errors the dispatcher may retry once for pure capabilities.
RETRYABLE = (AdapterError, InvocationTimeout)

# Public kind -> HTTP status, for rendering error envelopes at the gateway.
PUBLIC_STATUS: Dict[str, int] = {
    cls.public_kind: cls.status
    for cls in (
        AuthenticationError,
        AuthorizationError,
        UnknownCapability,
        DuplicateCapability,
        SessionError,
        RateLimited,
        InvalidPayload,
        InvocationTimeout,
        AdapterError,
        Cancelled,
        ConfigError,
    )
}
