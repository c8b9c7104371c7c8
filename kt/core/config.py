import copy
import json
import os
from datetime import datetime
from kt.common.logger import log
from kt.util import now_iso
from kt.common.setup import PATHS


_SCHEMA_VERSION = 1

#region === Helpers and Paths ===

STATE_PATH = PATHS.current / "state.json"
SNAPSHOT_DIR = PATHS.snapshots
COMPLETED_DIR = PATHS.sessions

# Default values just for the settings section of the state dict.
_SETTINGS_DEFAULTS = {
    "api_base": "http://localhost:3000",
    "username": None,
    "role": "employee",
    "currency": "C$",
    "default_minutes": 30,
    "confirm_transfer": True,
    "confirm_stop": True,
    "snapshot_min_minutes": 5,
    "outbox_retry_seconds": 30,
}
# Helper to return a truly fresh, default state.
def build_default_state():
    return {
        "meta": {
            "schema_version": _SCHEMA_VERSION,
            "saved_at": now_iso(),
        },
        "settings": dict(_SETTINGS_DEFAULTS),
        "stations": {},
        "outbox": [],
        "cache": {
            "stations": [],
            "tiers": [],
        },
    }

# KT_API_BASE lets a deployment point every device at the same service without touching state.json.
def api_base(settings):
    return os.getenv("KT_API_BASE") or settings.get("api_base") or _SETTINGS_DEFAULTS["api_base"]

#endregion === Helpers and Paths ===

#region === Saving and Loading State ===

# Loads the persisted state from state.json, ensuring the schema is valid and handling default fallbacks. Per-station
# timer entries are only checked for being objects here; their contents are validated by the ledger on import.
def load_state(path=None):
    path = path or STATE_PATH
    try:
        if not path.exists():
            log.info(f"No existing state.json found at '{path}', loading fresh state dict.")
            return build_default_state()

        with open(path, "r", encoding="utf-8") as f:
            state = json.load(f)
        if not isinstance(state, dict):
            raise TypeError(f"state.json root must be an object, got {type(state).__name__}")
        defaulted_values = set()

        # Validate the meta dict
        if "meta" not in state or not isinstance(state["meta"], dict):
            defaulted_values.add("meta")
            state["meta"] = {}
        if "schema_version" not in state["meta"] or not isinstance(state["meta"]["schema_version"], int):
            defaulted_values.add("meta.schema_version")
            state["meta"]["schema_version"] = _SCHEMA_VERSION

        # Validate the settings dict, fill in any necessary defaults
        if "settings" not in state or not isinstance(state["settings"],dict):
            defaulted_values.add("settings")
            state["settings"] = dict(_SETTINGS_DEFAULTS)
        else:
            for key, default in _SETTINGS_DEFAULTS.items():
                if key not in state["settings"]:
                    defaulted_values.add(f"settings.{key}")
                    state["settings"][key] = default

        # Validate the stations dict, dropping any entry that isn't even an object
        if "stations" not in state or not isinstance(state["stations"],dict):
            defaulted_values.add("stations")
            state["stations"] = {}
        else:
            for station_id in list(state["stations"]):
                if not isinstance(state["stations"][station_id], dict):
                    defaulted_values.add(f"stations.{station_id}")
                    del state["stations"][station_id]

        # Validate the outbox list
        if "outbox" not in state or not isinstance(state["outbox"],list):
            defaulted_values.add("outbox")
            state["outbox"] = []

        # Validate the cache dict
        if "cache" not in state or not isinstance(state["cache"],dict):
            defaulted_values.add("cache")
            state["cache"] = {"stations": [], "tiers": []}
        else:
            for key in ("stations", "tiers"):
                if key not in state["cache"] or not isinstance(state["cache"][key],list):
                    defaulted_values.add(f"cache.{key}")
                    state["cache"][key] = []

        # Log results
        if defaulted_values:
            log.warning(f"Successfully loaded state dict from '{path}', but with missing values that were defaulted: {', '.join(sorted(defaulted_values))}")
        else:
            log.info(f"Successfully loaded state dict from '{path}'.")
        return state
    # Fall back to a fresh state dict in case of error, but warn in log
    except (json.JSONDecodeError, OSError, TypeError, UnicodeDecodeError):
        log.warning("Ran into an error while trying to load state.json, falling back to loading a fresh state dict.",exc_info=True)
        return build_default_state()
# Write the given state to disk. Writes to a sibling temp file first so a crash mid-write can't leave a torn state.json.
def save_state(state, path=None):
    path = path or STATE_PATH
    state["meta"]["saved_at"] = now_iso()
    tmp_path = path.with_suffix(".json.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp_path, path)
    log.debug(f"Successfully saved state to '{path}'")

# Saves the given state dict as a closed shift in the completed shifts folder. The result is a fully self-contained
# state file that could be restored on its own.
def save_completed_shift(state, boundary_dt, directory=None):
    directory = directory or COMPLETED_DIR
    directory.mkdir(parents=True, exist_ok=True)
    completed = copy.deepcopy(state)
    completed["meta"]["is_completed_shift"] = True
    completed["meta"]["saved_at"] = now_iso()
    completed["meta"]["shift_end"] = boundary_dt.isoformat()

    ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    final_path = directory / f"shift_{ts}.json"
    with open(final_path, "w", encoding="utf-8") as f:
        json.dump(completed, f, indent=2)
    log.info(f"Saved completed shift to '{final_path}'")
    return final_path

#endregion === Saving and Loading State ===
