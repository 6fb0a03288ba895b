# researchos/utils/config.py
# Rev 0.1.0
from __future__ import annotations
import copy
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from .paths import config_dir, DB_PATH

log = logging.getLogger(__name__)

SETTINGS_NAME = "settings.json"

_DEFAULTS: Dict[str, Any] = {
    "scanner": {
        "interval_ms": 60_000,
    },
    "reconcile": {
        "self_debounce_ms": 1_500,
        "collaborator_debounce_ms": 400,
    },
    "feed": {
        "poll_interval_ms": 5_000,
    },
    "backend": {
        "demo_mode": True,
        "db_path": None,
        "supabase_url": None,
        "supabase_key": None,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def settings_file() -> Path:
    return config_dir() / SETTINGS_NAME


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    path = path or settings_file()
    if path.exists():
        try:
            return _merge(_DEFAULTS, json.loads(path.read_text()))
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable settings %s: %s", path, e)
            return copy.deepcopy(_DEFAULTS)
    return copy.deepcopy(_DEFAULTS)


def save_settings(data: Dict[str, Any], path: Optional[Path] = None) -> None:
    (path or settings_file()).write_text(json.dumps(data, indent=2))


@dataclass(frozen=True)
class SyncConfig:
    """Flattened runtime knobs; environment wins over settings.json."""
    scanner_interval_ms: int
    self_debounce_ms: int
    collaborator_debounce_ms: int
    poll_interval_ms: int
    demo_mode: bool
    db_path: Path
    supabase_url: Optional[str]
    supabase_key: Optional[str]

    @classmethod
    def from_settings(cls, data: Optional[Dict[str, Any]] = None, env: Optional[Dict[str, str]] = None) -> "SyncConfig":
        data = _merge(_DEFAULTS, data or {})
        env = os.environ if env is None else env
        backend = data["backend"]

        url = env.get("RESEARCHOS_SUPABASE_URL") or backend.get("supabase_url")
        key = env.get("RESEARCHOS_SUPABASE_KEY") or backend.get("supabase_key")
        demo_env = env.get("RESEARCHOS_DEMO")
        if demo_env is not None:
            demo = demo_env.strip().lower() in ("1", "true", "yes", "on")
        else:
            demo = bool(backend.get("demo_mode", True))
        # Without credentials there is nothing to connect to
        if not (url and key):
            demo = True

        db_path = env.get("RESEARCHOS_DB") or backend.get("db_path") or DB_PATH
        return cls(
            scanner_interval_ms=int(data["scanner"]["interval_ms"]),
            self_debounce_ms=int(data["reconcile"]["self_debounce_ms"]),
            collaborator_debounce_ms=int(data["reconcile"]["collaborator_debounce_ms"]),
            poll_interval_ms=int(data["feed"]["poll_interval_ms"]),
            demo_mode=demo,
            db_path=Path(db_path),
            supabase_url=url,
            supabase_key=key,
        )
