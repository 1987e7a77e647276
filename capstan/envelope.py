"""
Capstan invocation envelopes.

Transport-agnostic request/result shapes.  Every transport (HTTP body,
NDJSON line, WebSocket frame, in-process call) is normalised into these
before reaching the dispatcher, and every answer leaves as one.

Result wire shape::

    {"correlation_id": "...", "status": "ok",    "output": {...}, "sequence": 0, "done": true}
    {"correlation_id": "...", "status": "error", "error": {"kind": "RateLimited",
                                                            "message": "...",
                                                            "retry_after": 12.5},
     "sequence": 0, "done": true}

Streams emit several ``ok`` results with increasing ``sequence`` and
``done: false``; the last element has ``done: true``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from capstan.errors import BrokerError


class ResultStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


@dataclass
class InvocationRequest:
    """One call to a capability within a session.

    Attributes:
        session_id:      Session negotiated earlier.
        capability:      Capability name.
        payload:         Input matching the capability's input schema.
        correlation_id:  Caller-visible id for cancellation and idempotency.
        timeout:         Optional caller-specified upper bound in seconds.
    """

    session_id: str
    capability: str
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InvocationRequest:
        """Build a request from a decoded wire body.

        Raises:
            KeyError:  If ``session_id`` or ``capability`` is missing.
            ValueError: If ``timeout`` is not a number.
        """
        timeout = data.get("timeout_s", data.get("timeout"))
        return cls(
            session_id=data["session_id"],
            capability=data["capability"],
            payload=dict(data.get("payload") or {}),
            correlation_id=data.get("correlation_id") or str(uuid.uuid4()),
            timeout=float(timeout) if timeout is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "capability": self.capability,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "timeout_s": self.timeout,
        }


@dataclass
class InvocationResult:
    """Outcome (or one chunk of the outcome) of an invocation."""

    correlation_id: str
    status: ResultStatus
    output: Any = None
    error: Optional[Dict[str, Any]] = None
    sequence: int = 0
    done: bool = True

    # ------------------------------------------------------------------
    # Factory methods
    # ------------------------------------------------------------------
    @classmethod
    def success(cls, correlation_id: str, output: Any, sequence: int = 0, done: bool = True) -> InvocationResult:
        return cls(
            correlation_id=correlation_id,
            status=ResultStatus.OK,
            output=output,
            sequence=sequence,
            done=done,
        )

    @classmethod
    def failure(cls, correlation_id: str, exc: BrokerError, sequence: int = 0) -> InvocationResult:
        """Wrap a broker error.  Only the public error info is carried."""
        return cls(
            correlation_id=correlation_id,
            status=ResultStatus.ERROR,
            error=exc.to_error_info(),
            sequence=sequence,
            done=True,
        )

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.OK

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.get("kind") if self.error else None

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "correlation_id": self.correlation_id,
            "status": self.status.value,
            "sequence": self.sequence,
            "done": self.done,
        }
        if self.ok:
            d["output"] = self.output
        else:
            d["error"] = dict(self.error or {})
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InvocationResult:
        return cls(
            correlation_id=data["correlation_id"],
            status=ResultStatus(data.get("status", "ok")),
            output=data.get("output"),
            error=data.get("error"),
            sequence=int(data.get("sequence", 0)),
            done=bool(data.get("done", True)),
        )
