from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketState

from ..poker.models import VoteValue
from ..poker.results import ErrorKind, Result
from .broadcaster import Subscription
from .coordinator import SessionCoordinator
from .metrics import service_version
from .protocol import change_to_dict, snapshot
from .reconcile import Reconciliation
from .settings import DEFAULTS, CoordinatorConfig, SettingsStore

log = logging.getLogger("planning_poker")

_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.CAPACITY_EXCEEDED: 503,
    ErrorKind.SESSION_NOT_FOUND: 404,
    ErrorKind.SESSION_EXPIRED: 410,
    ErrorKind.SESSION_FULL: 409,
    ErrorKind.SESSION_PAUSED: 409,
    ErrorKind.PARTICIPANT_NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NO_ACTIVE_ROUND: 409,
    ErrorKind.ALREADY_VOTING: 409,
    ErrorKind.ALREADY_REVEALED: 409,
    ErrorKind.INVALID_VOTE_VALUE: 422,
    ErrorKind.INVALID_TRANSFER_TARGET: 422,
}

# --- WebSocket message validation ---

_MAX_WS_MESSAGE_SIZE = 16 * 1024
_MAX_NAME_LENGTH = 64

_VALID_MSG_TYPES = frozenset({
    "start_round", "vote", "reveal", "reset", "leave", "reconcile", "ping",
})

_REQUIRED_FIELDS: dict[str, list[str]] = {
    "vote": ["value"],
    "reconcile": ["version"],
}

# Rate limiting: max messages per window
_RATE_LIMIT_WINDOW = 10.0  # seconds
_RATE_LIMIT_MAX = 100  # messages per window


def _validate_ws_message(msg: dict) -> str | None:
    """Validate a WebSocket message shape. Returns error string or None."""
    if not isinstance(msg, dict):
        return "Message must be a JSON object"
    msg_type = msg.get("type")
    if not isinstance(msg_type, str):
        return "Missing or invalid 'type' field"
    if msg_type not in _VALID_MSG_TYPES:
        return f"Unknown message type: {msg_type}"
    required = _REQUIRED_FIELDS.get(msg_type, [])
    for field in required:
        if field not in msg or msg[field] is None:
            return f"Missing required field '{field}' for {msg_type}"
    return None


def _clean_name(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    name = value.strip()
    if not name or len(name) > _MAX_NAME_LENGTH:
        return None
    return name


def _error_response(result: Result) -> JSONResponse:
    status = _STATUS_CODES.get(result.error, 400) if result.error else 400
    return JSONResponse(status_code=status, content=result.to_dict())


def _bad_request(detail: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"ok": False, "code": "bad_request", "message": detail})


def _check_settings(settings: SettingsStore, updates: dict[str, Any]) -> str | None:
    """Reject values the coordinator could not start with."""
    merged = settings.get_all()
    merged.update(updates)
    try:
        CoordinatorConfig.from_settings(merged)
    except (TypeError, ValueError) as exc:
        return f"Invalid settings: {exc}"
    return None


def _reconciliation_to_dict(rec: Reconciliation) -> dict:
    return {
        "kind": rec.kind,
        "version": rec.version,
        "changes": [change_to_dict(c) for c in rec.changes],
        "snapshot": rec.snapshot,
    }


def create_app(
    settings_store: SettingsStore | None = None,
    coordinator: SessionCoordinator | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> FastAPI:
    settings = settings_store or SettingsStore()
    if coordinator is None:
        config = CoordinatorConfig.from_settings(settings.get_effective(cli_overrides))
        coordinator = SessionCoordinator(config)
    registry = coordinator.registry
    membership = coordinator.membership
    voting = coordinator.voting

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        coordinator.start()
        log.info("coordinator started (max %d sessions)", coordinator.capacity.ceiling)
        try:
            yield
        finally:
            await coordinator.stop()

    app = FastAPI(title="Planning Poker", lifespan=lifespan)
    app.state.coordinator = coordinator

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": service_version(), **coordinator.health()}

    @app.get("/api/capacity")
    def get_capacity():
        return registry.capacity_status().to_dict()

    # --- Sessions ---

    @app.post("/api/sessions", status_code=201)
    async def create_session(body: dict):
        name = _clean_name(body.get("name"))
        creator = _clean_name(body.get("creator_name"))
        if not name or not creator:
            return _bad_request("'name' and 'creator_name' must be non-empty strings")
        avatar = str(body.get("creator_avatar") or "")
        result = await registry.create_session(name, creator, avatar)
        if not result.ok:
            return _error_response(result)
        session = result.value
        return {"participant_id": session.facilitator_id, "session": snapshot(session, session.facilitator_id)}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str, participant_id: str | None = None):
        result = await coordinator.view(session_id, participant_id)
        if not result.ok:
            return _error_response(result)
        return result.value

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str, participant_id: str):
        result = await registry.destroy_session(session_id, participant_id)
        if not result.ok:
            return _error_response(result)
        return {"ok": True}

    # --- Membership ---

    @app.post("/api/sessions/{session_id}/participants", status_code=201)
    async def join_session(session_id: str, body: dict):
        name = _clean_name(body.get("name"))
        if not name:
            return _bad_request("'name' must be a non-empty string")
        result = await membership.join(session_id, name, str(body.get("avatar") or ""))
        if not result.ok:
            return _error_response(result)
        return {"participant": result.value.to_dict()}

    @app.delete("/api/sessions/{session_id}/participants/{participant_id}")
    async def leave_session(session_id: str, participant_id: str):
        result = await membership.leave(session_id, participant_id)
        if not result.ok:
            return _error_response(result)
        return {"ok": True}

    @app.post("/api/sessions/{session_id}/participants/{participant_id}/kick")
    async def kick_participant(session_id: str, participant_id: str, body: dict):
        result = await membership.evict(session_id, str(body.get("facilitator_id", "")), participant_id)
        if not result.ok:
            return _error_response(result)
        return {"ok": True}

    @app.post("/api/sessions/{session_id}/facilitator")
    async def transfer_facilitator(session_id: str, body: dict):
        result = await membership.transfer_facilitator(
            session_id, str(body.get("participant_id", "")), str(body.get("target_id", "")),
        )
        if not result.ok:
            return _error_response(result)
        return {"ok": True}

    # --- Voting ---

    @app.post("/api/sessions/{session_id}/rounds", status_code=201)
    async def start_round(session_id: str, body: dict):
        topic = body.get("topic") or ""
        if not isinstance(topic, str):
            return _bad_request("'topic' must be a string")
        result = await voting.start_round(session_id, str(body.get("participant_id", "")), topic.strip())
        if not result.ok:
            return _error_response(result)
        return {"round_id": result.value.id, "topic": result.value.topic}

    @app.post("/api/sessions/{session_id}/votes")
    async def submit_vote(session_id: str, body: dict):
        result = await voting.submit_vote(session_id, str(body.get("participant_id", "")), body.get("value"))
        if not result.ok:
            return _error_response(result)
        return {"ok": True}

    @app.post("/api/sessions/{session_id}/reveal")
    async def reveal_votes(session_id: str, body: dict):
        result = await voting.reveal_votes(session_id, str(body.get("participant_id", "")))
        if not result.ok:
            return _error_response(result)
        return {"statistics": result.value.to_dict()}

    @app.post("/api/sessions/{session_id}/reset")
    async def reset_round(session_id: str, body: dict):
        result = await voting.reset_round(session_id, str(body.get("participant_id", "")))
        if not result.ok:
            return _error_response(result)
        return {"ok": True}

    @app.get("/api/deck")
    def get_deck():
        return [v.value for v in VoteValue]

    # --- Reconciliation & polling subscriptions ---

    @app.post("/api/sessions/{session_id}/reconcile")
    async def reconcile(session_id: str, body: dict):
        version = body.get("version")
        if not isinstance(version, int) or isinstance(version, bool):
            return _bad_request("'version' must be an integer")
        checksum = body.get("checksum")
        result = await coordinator.reconciliation.reconcile(
            session_id, str(body.get("participant_id", "")), version,
            checksum if isinstance(checksum, str) else None,
        )
        if not result.ok:
            return _error_response(result)
        return _reconciliation_to_dict(result.value)

    @app.post("/api/sessions/{session_id}/subscriptions", status_code=201)
    async def subscribe(session_id: str, body: dict):
        result = await coordinator.attach(session_id, str(body.get("participant_id", "")), track_presence=False)
        if not result.ok:
            return _error_response(result)
        return {"subscription_id": result.value.id}

    @app.get("/api/sessions/{session_id}/subscriptions/{sub_id}/events")
    def drain_events(session_id: str, sub_id: str):
        result = coordinator.drain(session_id, sub_id)
        if not result.ok:
            return _error_response(result)
        return [change_to_dict(c) for c in result.value]

    @app.delete("/api/sessions/{session_id}/subscriptions/{sub_id}")
    async def unsubscribe(session_id: str, sub_id: str):
        sub = coordinator.broadcaster.get_subscription(session_id, sub_id)
        if sub is None:
            return JSONResponse(status_code=404, content={"ok": False, "code": "not_found", "message": "Unknown subscription"})
        await coordinator.detach(sub, track_presence=False)
        return {"ok": True}

    # --- Settings REST API (applied on next start) ---

    @app.get("/api/settings")
    def get_settings():
        return settings.get_all()

    @app.put("/api/settings")
    def update_settings(body: dict):
        invalid = [k for k in body if k not in DEFAULTS]
        if invalid:
            return JSONResponse(status_code=400, content={"detail": f"Unknown settings keys: {invalid}"})
        problem = _check_settings(settings, body)
        if problem:
            return JSONResponse(status_code=400, content={"detail": problem})
        settings.set_many(body)
        return settings.get_all()

    @app.get("/api/settings/{key:path}")
    def get_setting(key: str):
        if key not in DEFAULTS:
            return JSONResponse(status_code=404, content={"detail": f"Unknown settings key: {key}"})
        return {"key": key, "value": settings.get(key)}

    @app.put("/api/settings/{key:path}")
    def update_setting(key: str, body: dict):
        if key not in DEFAULTS:
            return JSONResponse(status_code=400, content={"detail": f"Unknown settings key: {key}"})
        if "value" not in body:
            return JSONResponse(status_code=400, content={"detail": "Missing 'value' in request body"})
        problem = _check_settings(settings, {key: body["value"]})
        if problem:
            return JSONResponse(status_code=400, content={"detail": problem})
        settings.set(key, body["value"])
        return {"key": key, "value": body["value"]}

    @app.delete("/api/settings/{key:path}")
    def delete_setting(key: str):
        settings.delete(key)
        return {"ok": True}

    # --- Push channel ---

    async def _pump(ws: WebSocket, sub: Subscription) -> None:
        while True:
            batch = await sub.next_batch()
            for change in batch:
                await ws.send_json(change_to_dict(change))
            if sub.closed and not len(sub):
                if ws.application_state is WebSocketState.CONNECTED:
                    await ws.close(code=1000)
                return

    async def _handle(ws: WebSocket, session_id: str, participant_id: str, msg: dict) -> bool:
        """Dispatch one client message. Returns False once the connection should end."""
        msg_type = msg["type"]
        if msg_type == "ping":
            await ws.send_json({"type": "pong"})
            return True
        if msg_type == "start_round":
            topic = msg.get("topic") if isinstance(msg.get("topic"), str) else ""
            result = await voting.start_round(session_id, participant_id, topic.strip())
        elif msg_type == "vote":
            result = await voting.submit_vote(session_id, participant_id, msg.get("value"))
        elif msg_type == "reveal":
            result = await voting.reveal_votes(session_id, participant_id)
        elif msg_type == "reset":
            result = await voting.reset_round(session_id, participant_id)
        elif msg_type == "leave":
            result = await membership.leave(session_id, participant_id)
            if result.ok:
                if ws.application_state is WebSocketState.CONNECTED:
                    await ws.send_json({"type": "left"})
                return False
        else:  # reconcile
            version = msg.get("version")
            if not isinstance(version, int) or isinstance(version, bool):
                await ws.send_json({"type": "error", "code": "bad_request", "message": "'version' must be an integer"})
                return True
            checksum = msg.get("checksum")
            rec = await coordinator.reconciliation.reconcile(
                session_id, participant_id, version, checksum if isinstance(checksum, str) else None,
            )
            if rec.ok:
                await ws.send_json({"type": "reconciled", **_reconciliation_to_dict(rec.value)})
                return True
            result = rec
        if not result.ok:
            await ws.send_json({"type": "error", "request": msg_type, "code": result.error.value, "message": result.message})
        return True

    @app.websocket("/ws/{session_id}/{participant_id}")
    async def websocket_endpoint(ws: WebSocket, session_id: str, participant_id: str) -> None:
        await ws.accept()
        attached = await coordinator.attach(session_id, participant_id)
        if not attached.ok:
            await ws.send_json({"type": "error", "code": attached.error.value, "message": attached.message})
            await ws.close(code=4404)
            return
        sub = attached.value
        log.info("ws connected session=%s participant=%s", session_id, participant_id)

        last_version = ws.query_params.get("last_version")
        if last_version is not None and last_version.lstrip("-").isdigit():
            rec = await coordinator.reconciliation.reconcile(session_id, participant_id, int(last_version))
            if rec.ok:
                await ws.send_json({"type": "reconciled", **_reconciliation_to_dict(rec.value)})
        else:
            view = await coordinator.view(session_id, participant_id)
            if view.ok:
                await ws.send_json({"type": "snapshot", "session": view.value})

        pump = asyncio.create_task(_pump(ws, sub), name=f"ws-pump-{sub.id}")
        _rate_timestamps: list[float] = []
        left = False
        try:
            while True:
                raw = await ws.receive_text()
                if len(raw) > _MAX_WS_MESSAGE_SIZE:
                    await ws.send_json({"type": "error", "message": f"Message too large (max {_MAX_WS_MESSAGE_SIZE} bytes)"})
                    continue

                try:
                    msg = json.loads(raw)
                except (json.JSONDecodeError, ValueError):
                    await ws.send_json({"type": "error", "message": "Invalid JSON"})
                    continue

                validation_error = _validate_ws_message(msg)
                if validation_error:
                    await ws.send_json({"type": "error", "message": validation_error})
                    continue

                now = time.monotonic()
                _rate_timestamps = [t for t in _rate_timestamps if now - t < _RATE_LIMIT_WINDOW]
                _rate_timestamps.append(now)
                if len(_rate_timestamps) > _RATE_LIMIT_MAX:
                    await ws.send_json({"type": "error", "message": "Rate limit exceeded, slow down"})
                    continue

                if not await _handle(ws, session_id, participant_id, msg):
                    left = True
                    break
        except WebSocketDisconnect:
            log.info("ws disconnected session=%s participant=%s", session_id, participant_id)
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            await coordinator.detach(sub)
        if left and ws.application_state is WebSocketState.CONNECTED:
            await ws.close(code=1000)

    return app
