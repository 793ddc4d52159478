from __future__ import annotations

import asyncio
import json
import logging
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
import uvicorn

from wayfinder.config import load_service_config
from wayfinder.engine import EngineConfig, SpatialAwarenessEngine
from wayfinder.geometry import Vec3, vec3
from wayfinder.location_store import LocationMemory, LocationMemoryStore
from wayfinder.observation_ingest import ObservationIngestor
from wayfinder.obstacle_map import ObstacleMemoryMap
from wayfinder.path_planner import PathPlanner
from wayfinder.scan_strategy import ScanStrategyController

REPO_ROOT = Path(__file__).resolve().parent.parent
CONFIG, CONFIG_WARNING = load_service_config(REPO_ROOT)

ROUTE_WAIT_S = 10.0

OBSTACLES = ObstacleMemoryMap()
STORE = LocationMemoryStore(CONFIG.database_url, match_window=CONFIG.match_window)
STRATEGY = ScanStrategyController()
PLANNER = PathPlanner()
INGEST = ObservationIngestor(max_queue_size=CONFIG.observation_queue_size)
ENGINE = SpatialAwarenessEngine(
    config=EngineConfig(
        loop_hz=CONFIG.loop_hz,
        sweep_interval_s=CONFIG.sweep_interval_s,
        strategy_interval_s=CONFIG.strategy_interval_s,
        fingerprint_interval_s=CONFIG.fingerprint_interval_s,
        maintenance_interval_s=CONFIG.maintenance_interval_s,
        maintenance_horizon_days=CONFIG.maintenance_horizon_days,
    ),
    obstacle_map=OBSTACLES,
    store=STORE,
    strategy=STRATEGY,
    planner=PLANNER,
    ingestor=INGEST,
)
ENGINE_TASK: Optional[asyncio.Task[Any]] = None

app = FastAPI(title="Wayfinder Spatial Memory Service", version="0.1.0")


def _require_token(token: str) -> None:
    expected = CONFIG.api_token.strip()
    if not expected:
        return
    if token.strip() != expected:
        raise HTTPException(status_code=401, detail="Invalid API token.")


def _vec_field(body: Dict[str, Any], key: str, required: bool = True) -> Optional[Vec3]:
    raw = body.get(key)
    if raw is None:
        if required:
            raise HTTPException(status_code=400, detail=f"{key} is required.")
        return None
    try:
        return vec3(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{key} must be a list of 3 numbers.")


def _location_dict(memory: Optional[LocationMemory]) -> Optional[Dict[str, Any]]:
    if memory is None:
        return None
    return {
        "id": memory.id,
        "fingerprint": memory.fingerprint,
        "name": memory.name,
        "visit_count": memory.visit_count,
        "last_visit": memory.last_visit.isoformat(),
        "confidence": memory.confidence,
        "average_scan_time": memory.average_scan_time,
        "is_frequent": memory.is_frequent,
        "obstacle_count": len(memory.obstacles),
        "pattern_count": len(memory.patterns),
        "paths": [
            {
                "waypoints": [list(w) for w in path.waypoints],
                "usage_count": path.usage_count,
                "average_traversal_time": path.average_traversal_time,
                "success_rate": path.success_rate,
            }
            for path in memory.paths
        ],
    }


def _await_route(future, wait: bool) -> Dict[str, Any]:
    if future is not None and wait:
        try:
            future.result(timeout=ROUTE_WAIT_S)
        except FutureTimeoutError:
            logging.warning("Route planning still running after %.1fs.", ROUTE_WAIT_S)
    return ENGINE.route().to_dict()


@app.on_event("startup")
async def _on_startup() -> None:
    global ENGINE_TASK

    logging.basicConfig(level=logging.INFO)
    if CONFIG_WARNING:
        logging.warning(CONFIG_WARNING)

    ENGINE_TASK = asyncio.create_task(ENGINE.run())


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    global ENGINE_TASK

    ENGINE.request_stop()

    if ENGINE_TASK is not None:
        ENGINE_TASK.cancel()
        try:
            await ENGINE_TASK
        except asyncio.CancelledError:
            pass
        ENGINE_TASK = None

    ENGINE.close()


@app.get("/health")
def health() -> Dict[str, Any]:
    return {
        "ok": True,
        "service": "wayfinder-memory",
        "scan_mode": STRATEGY.mode.value,
        "route_status": ENGINE.route().status.value,
        "engine": ENGINE.debug_snapshot(),
    }


@app.get("/state")
def get_state(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    snapshot = ENGINE.debug_snapshot()
    snapshot["route"] = ENGINE.route().to_dict()
    alert = ENGINE.proximity_alert()
    snapshot["alert"] = alert.to_dict() if alert is not None else None
    return snapshot


@app.post("/observations")
def post_observations(
    payload: Dict[str, Any] = Body(...),
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    try:
        batch = INGEST.decode_text_payload(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    accepted = ENGINE.ingest_batch(batch)
    return {"ok": True, "accepted": accepted, "obstacles_active": OBSTACLES.active_count}


@app.put("/signatures")
def put_signatures(
    payload: Dict[str, Any] = Body(...),
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")

    signatures = payload.get("signatures", [])
    if not isinstance(signatures, list):
        raise HTTPException(status_code=400, detail="signatures must be a list of strings.")
    ENGINE.set_signatures(signatures)

    if "ambient_signature" in payload:
        ambient = payload.get("ambient_signature")
        try:
            ENGINE.set_ambient_signature(None if ambient is None else float(ambient))
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail="ambient_signature must be a number.")

    if "room_bounds" in payload:
        bounds = payload.get("room_bounds")
        if bounds is None:
            ENGINE.set_room_bounds(None)
        elif isinstance(bounds, dict):
            ENGINE.set_room_bounds((_vec_field(bounds, "min"), _vec_field(bounds, "max")))
        else:
            raise HTTPException(status_code=400, detail="room_bounds must be an object with min and max.")

    return {"ok": True, "signature_count": len(signatures)}


@app.get("/scan/parameters")
def scan_parameters(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    params = ENGINE.scan_parameters()
    return {
        "mode": STRATEGY.mode.value,
        "frequency_hz": params.frequency_hz,
        "coverage": params.coverage,
        "skip_areas": [list(p) for p in params.skip_areas],
        "battery_usage_rate": STRATEGY.battery_usage_rate,
        "predicted_destination": ENGINE.predict_destination(),
    }


@app.post("/route")
def post_route(
    payload: Dict[str, Any] = Body(...),
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")

    goal = _vec_field(payload, "goal")
    start = _vec_field(payload, "start", required=False)
    heading = _vec_field(payload, "heading", required=False)
    try:
        future = ENGINE.plan_route(goal, start=start, heading=heading)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _await_route(future, bool(payload.get("wait", True)))


@app.post("/route/position")
def post_route_position(
    payload: Dict[str, Any] = Body(...),
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")

    position = _vec_field(payload, "position")
    heading = _vec_field(payload, "heading", required=False)
    future = ENGINE.update_user_position(position, heading)
    route = _await_route(future, bool(payload.get("wait", True)))
    alert = ENGINE.proximity_alert()
    return {
        "replanned": future is not None,
        "route": route,
        "alert": alert.to_dict() if alert is not None else None,
    }


@app.get("/route")
def get_route(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    return ENGINE.route().to_dict()


@app.delete("/route")
def delete_route(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    ENGINE.clear_route()
    return ENGINE.route().to_dict()


@app.get("/obstacles")
def get_obstacles(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    return {"obstacles": OBSTACLES.export_map(), "total_detected": OBSTACLES.total_detected}


@app.get("/obstacles/reliable")
def get_reliable_obstacles(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    return {
        "obstacles": [
            {
                "id": o.id,
                "position": list(o.position),
                "size": list(o.size),
                "type": o.classification.value,
                "confidence": o.confidence,
                "update_count": o.update_count,
            }
            for o in OBSTACLES.get_reliable_obstacles()
        ]
    }


@app.post("/location/save")
def save_location(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")

    body = payload or {}
    name = str(body.get("name", "")).strip() or None
    saved = ENGINE.save_current_location(name=name)
    if saved is None:
        return {"ok": False, "message": "Location could not be saved.", "location": None}
    return {"ok": True, "message": "Location saved.", "location": _location_dict(saved)}


@app.post("/location/check")
def check_location(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    match = ENGINE.check_location()
    return {
        "known": match is not None,
        "location": _location_dict(match),
        "scan_mode": STRATEGY.mode.value,
    }


@app.post("/location/path")
def save_path(
    payload: Dict[str, Any] = Body(...),
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    try:
        traversal_time_s = float(payload.get("traversal_time_s", 0.0))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="traversal_time_s must be a number.")

    saved = ENGINE.save_navigation_path(traversal_time_s)
    if saved is None:
        return {"ok": False, "message": "No known location or route to save."}
    return {"ok": True, "usage_count": saved.usage_count, "average_traversal_time": saved.average_traversal_time}


@app.get("/memory/stats")
def memory_stats(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    stats = ENGINE.memory_stats()
    return {
        "location_count": stats.location_count,
        "obstacle_count": stats.obstacle_count,
        "storage_bytes": stats.storage_bytes,
        "summary": ENGINE.memory_summary(),
    }


@app.post("/maintenance")
def maintenance(
    x_api_token: Optional[str] = Header(default="", alias="X-API-Token"),
) -> Dict[str, Any]:
    _require_token(x_api_token or "")
    swept = OBSTACLES.sweep_stale()
    removed = ENGINE.perform_maintenance()
    return {"ok": True, "stale_obstacles_swept": swept, "locations_removed": removed}


@app.websocket("/stream/observations")
async def ws_observation_stream(websocket: WebSocket) -> None:
    expected = CONFIG.api_token.strip()
    token = websocket.query_params.get("token", "")
    if expected and token.strip() != expected:
        await websocket.close(code=1008)
        return

    await websocket.accept()

    try:
        while True:
            packet = await websocket.receive()

            if packet.get("type") == "websocket.disconnect":
                break

            text_payload = packet.get("text")
            bytes_payload = packet.get("bytes")

            try:
                if text_payload is not None:
                    await _handle_text_ws_message(websocket, text_payload)
                elif bytes_payload is not None:
                    batch = INGEST.decode_binary_packet(bytes_payload)
                    if INGEST.enqueue(batch):
                        ENGINE.record_drop()
                else:
                    await websocket.send_json({"type": "warn", "message": "Empty websocket packet."})
            except (KeyError, TypeError, ValueError) as exc:
                await websocket.send_json({"type": "error", "message": str(exc)})

    except WebSocketDisconnect:
        return


async def _handle_text_ws_message(websocket: WebSocket, message: str) -> None:
    trimmed = message.strip()
    if not trimmed:
        return

    if trimmed.lower() == "ping":
        await websocket.send_text("pong")
        return

    payload = json.loads(trimmed)
    if not isinstance(payload, dict):
        raise ValueError("Text websocket payload must be a JSON object.")

    msg_type = str(payload.get("type", "")).strip()
    if msg_type in ("obstacle", "obstacle_batch"):
        batch = INGEST.decode_text_payload(payload)
        if INGEST.enqueue(batch):
            ENGINE.record_drop()
        return

    if msg_type == "pose":
        position = vec3(payload["position"])
        heading = payload.get("heading")
        ENGINE.set_user_pose(position, vec3(heading) if heading is not None else None)
        return

    if msg_type == "signatures":
        signatures = payload.get("signatures", [])
        if not isinstance(signatures, list):
            raise ValueError("signatures must be a list.")
        ENGINE.set_signatures(signatures)
        return

    if msg_type == "scan_parameters":
        params = ENGINE.scan_parameters()
        await websocket.send_json(
            {
                "type": "scan_parameters",
                "frequency_hz": params.frequency_hz,
                "coverage": params.coverage,
                "skip_areas": [list(p) for p in params.skip_areas],
            }
        )
        return

    raise ValueError(f"Unsupported websocket message type: {msg_type}")


def main() -> None:
    uvicorn.run(
        "wayfinder.main:app",
        host=CONFIG.host,
        port=CONFIG.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
