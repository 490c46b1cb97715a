"""FastAPI application exposing a peer's reconciliation state."""

import logging
from datetime import datetime
from typing import Any

from fastapi import Body, FastAPI, HTTPException

from ..config import Config
from ..engine import ReconciliationEngine

logger = logging.getLogger(__name__)


def create_app(config: Config, engine: ReconciliationEngine) -> FastAPI:
    """Create the FastAPI state API.

    Args:
        config: Node configuration.
        engine: Engine whose state is exposed.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="peersync",
        description="Reconciliation state API for a peersync peer",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.engine = engine

    # ==================== Status ====================

    @app.get("/api/status")
    async def api_status() -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "namespace": config.node.namespace,
            "timestamp": datetime.now().isoformat(),
            **engine.get_stats(),
        }

    # ==================== Local state ====================

    @app.get("/api/state")
    async def api_state() -> dict[str, Any]:
        """Get the local state and clock."""
        return {
            "peer_id": engine.peer_id,
            "state": engine.get_state(),
            "clock": engine.get_clock().to_dict(),
        }

    @app.post("/api/state")
    async def api_update_state(fields: dict[str, Any] = Body(...)) -> dict[str, Any]:
        """Apply a local write and broadcast it to peers."""
        if engine.closed:
            raise HTTPException(status_code=503, detail="Engine is shut down")
        state = engine.update_state(fields)
        return {
            "peer_id": engine.peer_id,
            "state": state,
            "clock": engine.get_clock().to_dict(),
        }

    @app.get("/api/clock")
    async def api_clock() -> dict[str, int]:
        """Get the local logical clock."""
        return engine.get_clock().to_dict()

    # ==================== Peers ====================

    @app.get("/api/peers")
    async def api_peers() -> dict[str, Any]:
        """List known peers."""
        peers = sorted(engine.known_peers)
        return {
            "count": len(peers),
            "peers": [_peer_summary(engine, peer_id) for peer_id in peers],
        }

    @app.get("/api/peers/{peer_id}")
    async def api_peer(peer_id: str) -> dict[str, Any]:
        """Get one known peer's last state snapshot and clock."""
        if peer_id not in engine.known_peers:
            raise HTTPException(status_code=404, detail=f"Unknown peer: {peer_id}")
        return _peer_summary(engine, peer_id)

    # ==================== Sync ====================

    @app.get("/api/sync/state")
    async def api_sync_state() -> dict[str, Any]:
        """Get the local state as a STATE_RESPONSE wire message."""
        return engine.build_state_response().to_dict()

    @app.post("/api/sync/messages")
    async def api_sync_messages(message: dict[str, Any] = Body(...)) -> dict[str, Any]:
        """Deliver an inbound peer message to the engine."""
        accepted = engine.handle_message(message)
        return {"accepted": accepted}

    return app


def _peer_summary(engine: ReconciliationEngine, peer_id: str) -> dict[str, Any]:
    clock = engine.get_peer_clock(peer_id)
    return {
        "peer_id": peer_id,
        "state": engine.get_peer_state(peer_id),
        "clock": clock.to_dict() if clock is not None else None,
        "last_seen": engine.get_peer_last_seen(peer_id),
    }
