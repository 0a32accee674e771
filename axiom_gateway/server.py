"""
Axiom Gateway Server

FastAPI transport around a GovernanceGateway.

Endpoints:
    POST /v1/validate          conservative guard for a proposed operation
    POST /v1/operations        record an applied operation on the chain
    PUT  /v1/state             replace the supervised agent state
    POST /v1/events            append an event to the chain
    GET  /v1/events            list events (optionally after a seq)
    GET  /v1/events/verify     verify the chain
    GET  /v1/invariants        run invariant checks
    GET  /v1/blocks            repeated-block monitor status
    GET  /presence/stream      server-sent-event presence channel
    GET  /presence/status      presence channel state
    POST /presence/publish     emit the signal the current state warrants
    POST /presence/heartbeat   emit a heartbeat
    POST /presence/silence     quarantine the channel
    PUT  /presence/couplings   update pending/urgent coupling counters
    GET  /v1/stats, /v1/health, /metrics
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import GovernanceConfig, PresencePolicy
from .errors import GatewayError
from .event_store import JsonlEventStore
from .gateway import GovernanceGateway
from .metrics import instrument_fastapi
from .signals import SignalType, keepalive

logger = logging.getLogger("axiom_gateway")


# ---------------------------
# Request/Response Models
# ---------------------------


class OperationRequest(BaseModel):
    """A proposed operation; unknown fields pass through untouched."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    complexity: Optional[float] = Field(default=None, ge=0)
    target: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class RecordOperationRequest(BaseModel):
    operation: OperationRequest
    outcome: Any = None


class ValidateResponse(BaseModel):
    allowed: bool
    result: Dict[str, Any]
    repeated_blocks: Dict[str, Any]


class EventRequest(BaseModel):
    type: str = Field(min_length=1)
    data: Any = Field(default_factory=dict)
    timestamp: Optional[str] = None


class PublishRequest(BaseModel):
    epsilon: float = Field(default=0.0, ge=0)
    type: Optional[SignalType] = None


class HeartbeatRequest(BaseModel):
    epsilon: float = Field(default=0.0, ge=0)


class SilenceRequest(BaseModel):
    reason: str = "INV-006"


class CouplingCounters(BaseModel):
    pending: int = Field(default=0, ge=0)
    urgent: int = Field(default=0, ge=0)


def build_gateway_from_env() -> GovernanceGateway:
    """Gateway from AXG_* env vars; AXG_EVENTS_PATH enables JSONL persistence."""
    events_path = os.getenv("AXG_EVENTS_PATH", "").strip()
    store = JsonlEventStore(events_path) if events_path else None
    return GovernanceGateway(GovernanceConfig.from_env(), PresencePolicy.from_env(), store=store)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except Exception:
        return default


def poll_presence_once(gateway: GovernanceGateway) -> None:
    """One background presence tick: publish on change, then try a heartbeat.

    Failures are logged and swallowed so the polling loop keeps running.
    """
    if not gateway.has_state or gateway.channel.state.connected == 0:
        return
    try:
        gateway.publish()
        gateway.heartbeat()
    except GatewayError as e:
        logger.error("Presence poll failed: %s", e)
    except Exception:
        logger.exception("Presence poll failed unexpectedly")


def create_app(gateway: Optional[GovernanceGateway] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as axg_version

    if gateway is None:
        gateway = build_gateway_from_env()

    poll_seconds = _env_float("AXG_PRESENCE_POLL_SECONDS", 5.0)
    keepalive_seconds = _env_float("AXG_PRESENCE_KEEPALIVE_SECONDS", 30.0)

    async def _poll_presence() -> None:
        while True:
            await asyncio.sleep(poll_seconds)
            poll_presence_once(gateway)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        task = asyncio.create_task(_poll_presence()) if poll_seconds > 0 else None
        try:
            yield
        finally:
            if task is not None:
                task.cancel()

    app = FastAPI(
        title="Axiom Gateway",
        description="Governance layer: axiom validation, hash chain, presence guard",
        version=axg_version,
        lifespan=_lifespan,
    )
    app.state.gateway = gateway

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    metrics_token = (os.getenv("AXG_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Validation
    # ---------------------------

    @app.post("/v1/validate", response_model=ValidateResponse)
    async def validate_operation(request: OperationRequest):
        decision, repeated = gateway.evaluate(request.model_dump(exclude_none=True))
        return ValidateResponse(
            allowed=decision.allowed,
            result=decision.result.as_dict(),
            repeated_blocks=repeated.as_dict(),
        )

    @app.post("/v1/operations")
    async def record_operation(request: RecordOperationRequest):
        event = gateway.record_operation(request.operation.model_dump(exclude_none=True), request.outcome)
        return event.as_dict()

    @app.get("/v1/blocks")
    async def blocks():
        status = gateway.block_history.check(gateway.config)
        return {"monitor": status.as_dict(), "recorded": len(gateway.block_history)}

    # ---------------------------
    # State & chain
    # ---------------------------

    @app.put("/v1/state")
    async def put_state(state: Dict[str, Any]):
        return gateway.update_state(state).as_dict()

    @app.get("/v1/state")
    async def get_state():
        return gateway.state.as_dict()

    @app.post("/v1/events")
    async def append_event(request: EventRequest):
        return gateway.record_event(request.type, request.data, timestamp=request.timestamp).as_dict()

    @app.get("/v1/events")
    async def list_events(after: int = 0, limit: int = 100):
        if limit < 1 or limit > 1000:
            raise HTTPException(400, "limit must be in [1, 1000]")
        selected: List[Dict[str, Any]] = [e.as_dict() for e in gateway.events() if e.seq > after]
        return {"events": selected[:limit], "count": len(gateway.chain)}

    @app.get("/v1/events/verify")
    async def verify_events():
        ok, reason, index = gateway.verify_chain()
        return {"ok": ok, "reason": reason, "index": index, "count": len(gateway.chain)}

    @app.get("/v1/invariants")
    async def invariants():
        return gateway.verify_invariants().as_dict()

    # ---------------------------
    # Presence
    # ---------------------------

    @app.get("/presence/stream")
    async def presence_stream(request: Request):
        queue = gateway.channel.subscribe()
        logger.info("Presence client connected. Total: %d", gateway.channel.state.connected)

        async def _frames():
            try:
                yield keepalive("connected to entity presence channel")
                while not await request.is_disconnected():
                    try:
                        frame = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
                    except asyncio.TimeoutError:
                        frame = keepalive()
                    yield frame
            finally:
                gateway.channel.unsubscribe(queue)
                logger.info("Presence client disconnected. Total: %d", gateway.channel.state.connected)

        return StreamingResponse(
            _frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.get("/presence/status")
    async def presence_status():
        return gateway.channel.status()

    @app.post("/presence/publish")
    async def presence_publish(request: PublishRequest):
        signal_type = request.type.value if request.type is not None else None
        result, payload = gateway.publish(request.epsilon, signal_type=signal_type)
        return {
            "emitted": payload is not None,
            "guard": result.as_dict() if result is not None else None,
            "payload": payload.as_dict() if payload is not None else None,
        }

    @app.post("/presence/heartbeat")
    async def presence_heartbeat(request: HeartbeatRequest):
        result, payload = gateway.heartbeat(request.epsilon)
        return {
            "emitted": payload is not None,
            "guard": result.as_dict(),
            "payload": payload.as_dict() if payload is not None else None,
        }

    @app.post("/presence/silence")
    async def presence_silence(request: SilenceRequest):
        return {"silenced_until": gateway.silence(request.reason)}

    @app.put("/presence/couplings")
    async def presence_couplings(request: CouplingCounters):
        gateway.pending_couplings = request.pending
        gateway.urgent_couplings = request.urgent
        return request.model_dump()

    # ---------------------------
    # Ops
    # ---------------------------

    @app.get("/v1/stats")
    async def stats():
        return gateway.stats.snapshot(extra={"chain_length": len(gateway.chain)})

    @app.get("/v1/health")
    async def health_check():
        ok, reason, _index = gateway.verify_chain()
        return {
            "status": "healthy" if ok else "degraded",
            "chain": reason,
            "state_loaded": gateway.has_state,
        }

    return app


def main():
    """
    Main entry point for the axiom-gateway server.

    Usage:
        axiom-gateway                    # Start on default port 8000
        axiom-gateway --port 9000        # Start on custom port
        axiom-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Axiom Gateway - governance layer server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    AXG_EVENTS_PATH                JSONL file to persist the event chain
    AXG_MAX_COMPLEXITY             AXM-008 complexity bound
    AXG_BLOCK_REPEAT_THRESHOLD     denials per window before escalation
    AXG_BLOCK_REPEAT_WINDOW_MS     repeated-block window
    AXG_PRESENCE_POLL_SECONDS      presence poll interval (0 disables)
    AXG_METRICS_TOKEN              require X-Metrics-Token on /metrics
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="Log level (default: info)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.info("Starting Axiom Gateway on %s:%d", args.host, args.port)

    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    import sys

    sys.exit(main() or 0)
