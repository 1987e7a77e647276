"""
Capstan API Gateway.
FastAPI server that exposes the broker's negotiate / invoke / stream /
cancel operations over HTTP, NDJSON and WebSocket.

Run with:
    python -m capstan.api --config broker.yaml
    # or
    capstan gateway --config broker.yaml

Credentials are bearer JWTs (``Authorization: Bearer <jwt>``, or
``?token=<jwt>`` for clients that cannot set headers).  Invocations are
scoped by the ``session_id`` returned from ``POST /api/negotiate``.
"""

import argparse
import asyncio
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from capstan import __version__
from capstan.api_errors import CapstanAPIError, register_error_handlers
from capstan.broker import Broker
from capstan.config import config_path, load_config, load_dotenv_if_available, validate_broker_config
from capstan.envelope import InvocationRequest, InvocationResult
from capstan.errors import PUBLIC_STATUS, AuthorizationError, BrokerError, Cancelled, ConfigError, InvalidCredential
from capstan.rbac import Permission, Role

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("Capstan.Gateway")

# ---------------------------------------------------------------------------
# App & state
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Capstan Gateway",
    description="Capability broker: discover, negotiate and invoke provider tools.",
    version=__version__,
)

# CORS: configurable via CAPSTAN_CORS_ORIGINS env var (comma-separated).
_cors_origins = os.getenv("CAPSTAN_CORS_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


class AppState:
    """Mutable application state shared across endpoints."""

    broker: Optional[Broker] = None
    config_path: Optional[str] = None
    boot_time: float = time.time()


state = AppState()


def _broker() -> Broker:
    if state.broker is None:
        raise CapstanAPIError("BROKER_NOT_READY", "Broker is not initialized", 503)
    return state.broker


def _credential(request: Request) -> str:
    """Bearer credential from the Authorization header or ``?token=``."""
    auth = request.headers.get("Authorization", "")
    if not auth:
        token = request.query_params.get("token", "")
        auth = f"Bearer {token}" if token else ""
    if not auth:
        raise InvalidCredential("no credential supplied")
    return auth


def _result_response(result: InvocationResult) -> JSONResponse:
    """Render an invocation envelope; error envelopes carry their HTTP status."""
    if result.ok:
        return JSONResponse(content=result.to_dict())
    status = PUBLIC_STATUS.get(result.error_kind or "", 500)
    headers = {}
    retry_after = (result.error or {}).get("retry_after")
    if retry_after is not None:
        headers["Retry-After"] = str(max(1, int(retry_after + 0.999)))
    return JSONResponse(status_code=status, content=result.to_dict(), headers=headers)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------
class NegotiateRequest(BaseModel):
    capabilities: List[str]


class InvokeRequest(BaseModel):
    session_id: str
    capability: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    timeout_s: Optional[float] = None

    def to_request(self) -> InvocationRequest:
        return InvocationRequest.from_dict(self.model_dump())


class CancelRequest(BaseModel):
    correlation_id: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    """Health check -- returns OK if the gateway is running."""
    return {
        "status": "ok",
        "uptime_s": round(time.time() - state.boot_time, 1),
        "broker": state.broker.health() if state.broker is not None else None,
    }


@app.get("/api/capabilities")
async def list_capabilities(request: Request, provider: Optional[str] = None, scope: Optional[str] = None):
    """Discovery.  With a credential, only capabilities the caller's role permits are listed."""
    broker = _broker()
    permitted = None
    if scope:
        try:
            permitted = Permission.parse_many(s for s in scope.split(",") if s.strip())
        except ConfigError as exc:
            raise CapstanAPIError("BAD_SCOPE", exc.detail, 400) from exc
    if request.headers.get("Authorization") or request.query_params.get("token"):
        identity = await broker.dispatcher.authenticate(_credential(request))
        role_perms = broker.gate.permissions_for(identity.role)
        permitted = role_perms if permitted is None else permitted & role_perms
    caps = [cap.to_dict() for cap in broker.dispatcher.discover(provider=provider, scope=permitted)]
    return {"capabilities": caps, "count": len(caps), "providers": broker.registry.providers()}


@app.post("/api/negotiate")
async def negotiate(body: NegotiateRequest, request: Request):
    """Open a session scoped to the permitted subset of the requested capabilities."""
    broker = _broker()
    result = await broker.dispatcher.negotiate(_credential(request), body.capabilities)
    return result.to_dict(broker.sessions.now())


@app.delete("/api/sessions/{session_id}")
async def close_session(session_id: str, request: Request):
    await _broker().dispatcher.close_session(_credential(request), session_id)
    return {"status": "closed"}


@app.post("/api/sessions/{session_id}/narrow")
async def narrow_session(session_id: str, body: NegotiateRequest, request: Request):
    """Shrink a session's grant to the listed capabilities (owner only)."""
    broker = _broker()
    session = await broker.dispatcher.narrow(_credential(request), session_id, body.capabilities)
    return session.to_dict(broker.sessions.now())


async def _cancel_on_disconnect(request: Request, task: asyncio.Task, poll: float = 0.25) -> bool:
    """Cancel *task* if the HTTP client disconnects before it finishes."""
    while not task.done():
        if await request.is_disconnected():
            task.cancel()
            return True
        await asyncio.sleep(poll)
    return False


@app.post("/api/invoke")
async def invoke(body: InvokeRequest, request: Request):
    """Single-shot invocation.  Returns the result envelope.

    A client that disconnects mid-call cancels the downstream provider call.
    """
    req = body.to_request()
    task = asyncio.ensure_future(_broker().dispatcher.invoke(req))
    watcher = asyncio.ensure_future(_cancel_on_disconnect(request, task))
    try:
        result = await task
    except asyncio.CancelledError:
        if not (watcher.done() and watcher.result()):
            raise
        logger.info("Client disconnected during %s [%s]", req.capability, req.correlation_id)
        result = InvocationResult.failure(req.correlation_id, Cancelled("client disconnected"))
    finally:
        watcher.cancel()
    return _result_response(result)


@app.post("/api/invoke/stream")
async def invoke_stream(body: InvokeRequest):
    """Stream result envelopes back as newline-delimited JSON (NDJSON).

    Each line is one envelope; the last line has ``"done": true``.  A client
    disconnect cancels the downstream provider call.
    """
    dispatcher = _broker().dispatcher
    req = body.to_request()

    async def _generate():
        stream = dispatcher.invoke_stream(req)
        try:
            async for result in stream:
                yield json.dumps(result.to_dict()) + "\n"
        finally:
            await stream.aclose()

    return StreamingResponse(
        _generate(),
        media_type="application/x-ndjson",
        headers={"X-Correlation-ID": req.correlation_id},
    )


@app.post("/api/cancel")
async def cancel(body: CancelRequest, request: Request):
    """Cancel one of the caller's in-flight invocations."""
    dispatcher = _broker().dispatcher
    identity = await dispatcher.authenticate(_credential(request))
    cancelled = await dispatcher.cancel(body.correlation_id, identity_id=identity.id)
    return {"correlation_id": body.correlation_id, "cancelled": cancelled}


@app.get("/api/metrics")
async def get_metrics():
    """Prometheus text exposition format metrics (no auth -- safe for scrapers)."""
    from capstan.metrics import get_metrics as _get_metrics

    reg = _get_metrics()
    if state.broker is not None:
        reg.update_status(
            sessions_active=state.broker.sessions.active_count(),
            capabilities=len(state.broker.registry),
        )
    return Response(
        content=reg.render(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


@app.post("/api/config/reload")
async def reload_config(request: Request):
    """Reload the broker config file in-place without dropping sessions (admin only)."""
    broker = _broker()
    identity = await broker.dispatcher.authenticate(_credential(request))
    if identity.role != Role.ADMIN:
        raise AuthorizationError(f"{identity.id} ({identity.role.value}) may not reload config")
    path = config_path(state.config_path)
    outcome = broker.reload(load_config(path))
    logger.info("Config reloaded from %s by %s", path, identity.id)
    return {"status": "reloaded", "config_path": path, **outcome}


# ---------------------------------------------------------------------------
# WebSocket binding
# ---------------------------------------------------------------------------
@app.websocket("/ws/invoke")
async def ws_invoke(websocket: WebSocket, token: str = ""):
    """Bidirectional invocation channel.

    Auth: a bearer credential in the Authorization header or ``?token=``;
    otherwise the connection is closed with code 1008 (Policy Violation).

    Client frames::

        {"op": "invoke", "session_id": "...", "capability": "...", "payload": {...},
         "correlation_id": "...", "stream": true}
        {"op": "cancel", "correlation_id": "..."}

    Server frames are result envelopes (one per chunk when streaming), plus
    ``{"op": "cancelled", "correlation_id": "...", "cancelled": bool}`` acks
    and ``{"op": "error", "error": {...}}`` for malformed frames.
    """
    if state.broker is None:
        await websocket.close(code=1013)
        return
    dispatcher = state.broker.dispatcher
    credential = websocket.headers.get("Authorization", "") or (f"Bearer {token}" if token else "")
    try:
        identity = await dispatcher.authenticate(credential)
    except BrokerError as exc:
        logger.warning("WebSocket rejected: %s (%s)", exc.kind, exc.detail)
        await websocket.close(code=1008)
        return

    await websocket.accept()
    logger.debug("WebSocket invoke client connected: %s", identity.id)
    send_lock = asyncio.Lock()
    tasks: Dict[str, asyncio.Task] = {}

    async def _send(frame: Dict[str, Any]) -> None:
        async with send_lock:
            await websocket.send_json(frame)

    async def _run(req: InvocationRequest, streaming: bool) -> None:
        try:
            if streaming:
                stream = dispatcher.invoke_stream(req)
                try:
                    async for result in stream:
                        await _send(result.to_dict())
                finally:
                    await stream.aclose()
            else:
                await _send((await dispatcher.invoke(req)).to_dict())
        except WebSocketDisconnect:
            logger.debug("WebSocket closed while sending %s", req.correlation_id)
        finally:
            tasks.pop(req.correlation_id, None)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except ValueError:
                await _send({"op": "error", "error": {"kind": "BadRequest", "message": "invalid JSON frame"}})
                continue
            op = frame.get("op") if isinstance(frame, dict) else None
            if op == "invoke":
                try:
                    req = InvocationRequest.from_dict(frame)
                except (KeyError, TypeError, ValueError) as exc:
                    await _send({"op": "error", "error": {"kind": "BadRequest", "message": f"invalid frame: {exc}"}})
                    continue
                tasks[req.correlation_id] = asyncio.create_task(_run(req, bool(frame.get("stream"))))
            elif op == "cancel":
                cid = str(frame.get("correlation_id", ""))
                cancelled = await dispatcher.cancel(cid, identity_id=identity.id)
                await _send({"op": "cancelled", "correlation_id": cid, "cancelled": cancelled})
            else:
                await _send({"op": "error", "error": {"kind": "BadRequest", "message": f"unknown op {op!r}"}})
    except WebSocketDisconnect:
        logger.debug("WebSocket invoke client disconnected: %s", identity.id)
    finally:
        for task in list(tasks.values()):
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks.values(), return_exceptions=True)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def on_startup():
    load_dotenv_if_available()
    if state.broker is None:
        path = config_path(state.config_path)
        if os.path.exists(path):
            config = load_config(path)
            ok, errors = validate_broker_config(config)
            if not ok:
                for msg in errors:
                    logger.error("Config error: %s", msg)
            state.broker = Broker.from_config(config)
            state.config_path = path
        else:
            logger.warning("No config at %s -- starting an empty broker", path)
            state.broker = Broker()
    await state.broker.start()


@app.on_event("shutdown")
async def on_shutdown():
    if state.broker is not None:
        await state.broker.close()


def main():
    import uvicorn

    load_dotenv_if_available()

    parser = argparse.ArgumentParser(description="Capstan API Gateway")
    parser.add_argument("--config", default=config_path(), help="Broker config file")
    parser.add_argument("--host", default=os.getenv("CAPSTAN_API_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("CAPSTAN_API_PORT", "8000")))
    args = parser.parse_args()

    os.environ["CAPSTAN_CONFIG"] = args.config

    uvicorn.run(
        "capstan.api:app",
        host=args.host,
        port=args.port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
