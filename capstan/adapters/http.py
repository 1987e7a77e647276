"""
HTTP transport adapter (httpx).

Talks to a remote provider over plain HTTP/JSON::

    POST {base_url}/invoke/{capability}   {"payload": {...}, "correlation_id": "..."}
        -> 200 {"output": ...}

    POST {base_url}/stream/{capability}   same body
        -> 200 application/x-ndjson, one object per line:
           {"chunk": ..., "done": false}
           ...
           {"chunk": "",  "done": true}

    POST {base_url}/cancel/{correlation_id}   (best effort)

Provider config::

    providers:
      - id: weather
        transport: http
        base_url: http://weather.internal:9000
        token_env: WEATHER_PROVIDER_TOKEN    # optional bearer token
        timeout_s: 30

Failure normalisation::

    httpx.TimeoutException                -> InvocationTimeout
    httpx.HTTPStatusError (non-2xx)       -> AdapterError
    httpx.HTTPError (connect/reset/proto) -> AdapterError
    invalid JSON / missing "output"       -> AdapterError
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from capstan.adapters.base import TransportAdapter
from capstan.capabilities import Capability
from capstan.errors import AdapterError, ConfigError, InvocationTimeout

_DEFAULT_TIMEOUT = 30.0
_CANCEL_TIMEOUT = 2.0


class HttpAdapter(TransportAdapter):
    """Request/response and NDJSON streaming over HTTP.

    Args:
        provider:  Provider id.
        config:    Provider config (``base_url``, ``token_env``, ``timeout_s``, ``headers``).
        client:    Pre-built :class:`httpx.AsyncClient` (tests inject one with a mock transport).
    """

    transport = "http"

    def __init__(
        self,
        provider: str,
        config: Optional[Dict[str, Any]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(provider, config)
        base_url = self.config.get("base_url", "")
        if not base_url and client is None:
            raise ConfigError(f"Provider '{provider}' (http) needs a base_url")
        headers: Dict[str, str] = {"Accept": "application/json"}
        headers.update(self.config.get("headers") or {})
        token_env = self.config.get("token_env")
        if token_env and os.getenv(token_env):
            headers["Authorization"] = f"Bearer {os.getenv(token_env)}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=float(self.config.get("timeout_s", _DEFAULT_TIMEOUT)),
        )
        self._responses: Dict[str, httpx.Response] = {}

    @staticmethod
    def _body(payload: Dict[str, Any], correlation_id: str) -> Dict[str, Any]:
        return {"payload": payload, "correlation_id": correlation_id}

    async def invoke(self, capability: Capability, payload: Dict[str, Any], correlation_id: str) -> Any:
        self._begin(correlation_id)
        try:
            resp = await self._client.post(
                f"/invoke/{capability.name}",
                json=self._body(payload, correlation_id),
                headers={"X-Correlation-ID": correlation_id},
            )
            resp.raise_for_status()
            body = resp.json()
        except asyncio.CancelledError:
            self._interrupted(correlation_id)
            raise
        except httpx.TimeoutException as exc:
            raise InvocationTimeout(f"{self.provider}: {exc!r}") from exc
        except httpx.HTTPStatusError as exc:
            raise AdapterError(
                f"{self.provider} returned HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise AdapterError(f"{self.provider} transport error: {exc!r}") from exc
        except ValueError as exc:
            raise AdapterError(f"{self.provider} sent malformed JSON: {exc}") from exc
        finally:
            self._end(correlation_id)

        if not isinstance(body, dict) or "output" not in body:
            raise AdapterError(f"{self.provider} response has no 'output' field")
        return body["output"]

    async def stream(self, capability: Capability, payload: Dict[str, Any], correlation_id: str) -> AsyncIterator[Any]:
        cancelled = self._begin(correlation_id)
        try:
            async with self._client.stream(
                "POST",
                f"/stream/{capability.name}",
                json=self._body(payload, correlation_id),
                headers={"X-Correlation-ID": correlation_id, "Accept": "application/x-ndjson"},
            ) as resp:
                self._responses[correlation_id] = resp
                if resp.status_code >= 400:
                    await resp.aread()
                    raise AdapterError(
                        f"{self.provider} returned HTTP {resp.status_code}: {resp.text[:200]}"
                    )
                async for line in resp.aiter_lines():
                    if cancelled.is_set():
                        break
                    if not line.strip():
                        continue
                    try:
                        item = json.loads(line)
                    except ValueError as exc:
                        raise AdapterError(f"{self.provider} sent malformed NDJSON line: {exc}") from exc
                    if not isinstance(item, dict):
                        raise AdapterError(f"{self.provider} sent a non-object stream line")
                    if item.get("error"):
                        raise AdapterError(f"{self.provider} stream error: {item['error']}")
                    chunk = item.get("chunk")
                    done = bool(item.get("done"))
                    if not (done and chunk in (None, "")):
                        yield chunk
                    if done:
                        break
        except asyncio.CancelledError:
            self._interrupted(correlation_id)
            raise
        except httpx.TimeoutException as exc:
            raise InvocationTimeout(f"{self.provider}: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise AdapterError(f"{self.provider} transport error: {exc!r}") from exc
        finally:
            self._responses.pop(correlation_id, None)
            self._end(correlation_id)

    async def cancel(self, correlation_id: str) -> bool:
        """Close the open stream (if any) and ask the provider to abort."""
        had_work = await super().cancel(correlation_id)
        resp = self._responses.pop(correlation_id, None)
        if resp is not None:
            await resp.aclose()
            had_work = True
        if had_work:
            try:
                await self._client.post(f"/cancel/{correlation_id}", timeout=_CANCEL_TIMEOUT)
            except httpx.HTTPError as exc:
                self.logger.debug("Provider %s cancel for %s failed: %r", self.provider, correlation_id, exc)
        return had_work

    async def close(self) -> None:
        await self._client.aclose()
