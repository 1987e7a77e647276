"""Async Python client for the Capstan gateway.

Usage::

    from capstan.client import CapstanAsyncClient
    import asyncio

    async def main():
        async with CapstanAsyncClient("http://localhost:8000", token=jwt) as client:
            session = await client.negotiate(["weather.lookup"])
            result = await client.invoke(session["session_id"], "weather.lookup", {"city": "Oslo"})
            print(result.output)

            async for chunk in client.invoke_stream(session["session_id"], "text.tokens", {"prompt": "hi"}):
                print(chunk.output)

    asyncio.run(main())

Invocation methods return :class:`~capstan.envelope.InvocationResult`
envelopes, including error envelopes (rate limited, timed out, ...).  Other
gateway failures (bad credential, broker down) raise :class:`CapstanError`.

Environment:
    CAPSTAN_API_URL    -- Default gateway base URL
    CAPSTAN_API_TOKEN  -- Default bearer token (JWT)
"""

import json
import os
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import httpx

from capstan.envelope import InvocationResult

_DEFAULT_URL = os.getenv("CAPSTAN_API_URL", "http://localhost:8000")
_DEFAULT_TOKEN = os.getenv("CAPSTAN_API_TOKEN", "")
_DEFAULT_TIMEOUT = 30


class CapstanError(Exception):
    """Raised when the gateway returns a non-envelope error response."""

    def __init__(self, status: int, body: Any):
        self.status = status
        self.body = body
        self.code = body.get("code") if isinstance(body, dict) else None
        msg = body.get("error", body.get("detail", str(body))) if isinstance(body, dict) else str(body)
        super().__init__(f"HTTP {status}: {msg}")


class CapstanAsyncClient:
    """Async Capstan gateway client.

    Args:
        base_url:   Gateway base URL (e.g. ``http://localhost:8000``).
        token:      Bearer JWT.  Falls back to ``CAPSTAN_API_TOKEN``.
        timeout:    HTTP timeout in seconds (default 30).
        transport:  Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str = _DEFAULT_URL,
        token: Optional[str] = None,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token or _DEFAULT_TOKEN
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "CapstanAsyncClient":
        headers: Dict[str, str] = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _check_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Use 'async with CapstanAsyncClient(...) as client:'")
        return self._client

    @staticmethod
    def _raise_for(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        raise CapstanError(resp.status_code, body)

    async def _get(self, path: str, **params: Any) -> Any:
        resp = await self._check_client().get(path, params={k: v for k, v in params.items() if v is not None})
        self._raise_for(resp)
        return resp.json()

    async def _post(self, path: str, body: Optional[dict] = None) -> Any:
        resp = await self._check_client().post(path, json=body)
        self._raise_for(resp)
        return resp.json()

    @staticmethod
    def _invoke_body(
        session_id: str,
        capability: str,
        payload: Optional[Dict[str, Any]],
        correlation_id: Optional[str],
        timeout_s: Optional[float],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"session_id": session_id, "capability": capability, "payload": payload or {}}
        if correlation_id:
            body["correlation_id"] = correlation_id
        if timeout_s is not None:
            body["timeout_s"] = timeout_s
        return body

    # ------------------------------------------------------------------
    # Discovery / sessions
    # ------------------------------------------------------------------

    async def health(self) -> Dict[str, Any]:
        return await self._get("/health")

    async def capabilities(
        self, provider: Optional[str] = None, scope: Optional[Iterable[str]] = None
    ) -> List[Dict[str, Any]]:
        """GET /api/capabilities -- capability manifests visible to this token."""
        data = await self._get(
            "/api/capabilities",
            provider=provider,
            scope=",".join(scope) if scope else None,
        )
        return data["capabilities"]

    async def negotiate(self, capabilities: Iterable[str]) -> Dict[str, Any]:
        """POST /api/negotiate -- returns ``session_id``, ``granted``, ``denied``, ``partial``."""
        return await self._post("/api/negotiate", {"capabilities": list(capabilities)})

    async def narrow(self, session_id: str, keep: Iterable[str]) -> Dict[str, Any]:
        """Shrink a session's grant; returns the session with its reduced ``granted`` list."""
        return await self._post(f"/api/sessions/{session_id}/narrow", {"capabilities": list(keep)})

    async def close_session(self, session_id: str) -> Dict[str, Any]:
        resp = await self._check_client().delete(f"/api/sessions/{session_id}")
        self._raise_for(resp)
        return resp.json()

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(
        self,
        session_id: str,
        capability: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> InvocationResult:
        """POST /api/invoke -- returns the result envelope (ok or error)."""
        body = self._invoke_body(session_id, capability, payload, correlation_id, timeout_s)
        resp = await self._check_client().post("/api/invoke", json=body)
        try:
            data = resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and "correlation_id" in data and "status" in data:
            return InvocationResult.from_dict(data)
        self._raise_for(resp)
        raise CapstanError(resp.status_code, data)

    async def invoke_stream(
        self,
        session_id: str,
        capability: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> AsyncIterator[InvocationResult]:
        """POST /api/invoke/stream -- yield envelopes as NDJSON lines arrive."""
        body = self._invoke_body(session_id, capability, payload, correlation_id, timeout_s)
        async with self._check_client().stream("POST", "/api/invoke/stream", json=body) as resp:
            if not resp.is_success:
                await resp.aread()
                self._raise_for(resp)
            async for line in resp.aiter_lines():
                if not line.strip():
                    continue
                result = InvocationResult.from_dict(json.loads(line))
                yield result
                if result.done:
                    break

    async def cancel(self, correlation_id: str) -> bool:
        data = await self._post("/api/cancel", {"correlation_id": correlation_id})
        return bool(data.get("cancelled"))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def metrics(self) -> str:
        resp = await self._check_client().get("/api/metrics")
        self._raise_for(resp)
        return resp.text

    async def reload_config(self) -> Dict[str, Any]:
        return await self._post("/api/config/reload")
