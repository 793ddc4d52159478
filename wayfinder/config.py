from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

DEFAULT_CONFIG_FILENAME = "wayfinder_config.json"
DEFAULT_DATABASE_FILENAME = "spatial_memory.sqlite"


@dataclass
class ServiceConfig:
    host: str = "0.0.0.0"
    port: int = 8765
    api_token: str = ""

    database_url: str = ""
    observation_queue_size: int = 256

    loop_hz: float = 10.0
    sweep_interval_s: float = 5.0
    strategy_interval_s: float = 5.0
    fingerprint_interval_s: float = 15.0
    maintenance_interval_s: float = 3600.0
    maintenance_horizon_days: int = 30
    match_window: int = 20


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _clip(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, float(value)))


def _load_json(path: Path) -> Tuple[Dict[str, Any], str]:
    if not path.exists():
        return {}, ""

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        return {}, f"Failed reading {path.name}: {exc}"

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        return {}, f"Invalid JSON in {path.name}: {exc}"

    if not isinstance(parsed, dict):
        return {}, f"{path.name} must contain a JSON object."

    return parsed, ""


def default_database_url(root: Path) -> str:
    return f"sqlite:///{(root / DEFAULT_DATABASE_FILENAME).as_posix()}"


def load_service_config(base_dir: Path | None = None) -> Tuple[ServiceConfig, str]:
    root = base_dir if base_dir is not None else Path.cwd()

    config_override = os.environ.get("WAYFINDER_CONFIG", "").strip()
    config_path = Path(config_override).expanduser() if config_override else (root / DEFAULT_CONFIG_FILENAME)

    raw, warning = _load_json(config_path)
    notes: List[str] = []
    if warning:
        notes.append(warning)

    def pick_str(env_name: str, json_key: str, default: str = "") -> str:
        env_val = os.environ.get(env_name)
        if env_val is not None and env_val.strip():
            return env_val.strip()
        value = raw.get(json_key, default)
        if value is None:
            return default
        return str(value).strip()

    def pick_num(env_name: str, json_key: str, default: Any) -> Any:
        env_val = os.environ.get(env_name)
        if env_val is not None and env_val.strip():
            return env_val.strip()
        return raw.get(json_key, default)

    cfg = ServiceConfig(
        host=pick_str("WAYFINDER_HOST", "host", "0.0.0.0"),
        port=_to_int(pick_num("WAYFINDER_PORT", "port", 8765), 8765),
        api_token=pick_str("WAYFINDER_API_TOKEN", "api_token", ""),
        database_url=pick_str("WAYFINDER_DATABASE_URL", "database_url", ""),
        observation_queue_size=_to_int(
            pick_num("WAYFINDER_OBSERVATION_QUEUE_SIZE", "observation_queue_size", 256),
            256,
        ),
        loop_hz=_to_float(pick_num("WAYFINDER_LOOP_HZ", "loop_hz", 10.0), 10.0),
        sweep_interval_s=_to_float(pick_num("WAYFINDER_SWEEP_INTERVAL_S", "sweep_interval_s", 5.0), 5.0),
        strategy_interval_s=_to_float(
            pick_num("WAYFINDER_STRATEGY_INTERVAL_S", "strategy_interval_s", 5.0),
            5.0,
        ),
        fingerprint_interval_s=_to_float(
            pick_num("WAYFINDER_FINGERPRINT_INTERVAL_S", "fingerprint_interval_s", 15.0),
            15.0,
        ),
        maintenance_interval_s=_to_float(
            pick_num("WAYFINDER_MAINTENANCE_INTERVAL_S", "maintenance_interval_s", 3600.0),
            3600.0,
        ),
        maintenance_horizon_days=_to_int(
            pick_num("WAYFINDER_MAINTENANCE_HORIZON_DAYS", "maintenance_horizon_days", 30),
            30,
        ),
        match_window=_to_int(pick_num("WAYFINDER_MATCH_WINDOW", "match_window", 20), 20),
    )

    if not cfg.host:
        cfg.host = "0.0.0.0"
    if not cfg.database_url:
        cfg.database_url = default_database_url(root)
    cfg.port = int(_clip(cfg.port, 1, 65535))
    cfg.observation_queue_size = int(_clip(cfg.observation_queue_size, 1, 10000))

    cfg.loop_hz = _clip(cfg.loop_hz, 0.5, 120.0)
    cfg.sweep_interval_s = _clip(cfg.sweep_interval_s, 0.5, 60.0)
    cfg.strategy_interval_s = _clip(cfg.strategy_interval_s, 0.5, 60.0)
    cfg.fingerprint_interval_s = _clip(cfg.fingerprint_interval_s, 1.0, 600.0)
    cfg.maintenance_interval_s = _clip(cfg.maintenance_interval_s, 60.0, 7 * 86400.0)
    cfg.maintenance_horizon_days = int(_clip(cfg.maintenance_horizon_days, 1, 3650))
    cfg.match_window = int(_clip(cfg.match_window, 1, 1000))

    return cfg, " ".join(notes).strip()
