import copy
import json
import os
import time
from datetime import datetime
from kt.common.setup import PATHS
from kt.common.logger import log

# Retention targets in seconds. For each one we keep the snapshot taken closest to (now - target), so there's
# always something from a few minutes ago, an hour ago, yesterday, and so on.
TIERS = [
    5 * 60,
    15 * 60,
    60 * 60,
    4 * 3600,
    12 * 3600,
    24 * 3600,
    3 * 86400,
    7 * 86400,
]
_FILENAME_TS = "%Y%m%d_%H%M%S_%f"

# Copies the state dict into a timestamped snapshot file tagged with why it was taken (shift_close, transfer...)
def create_snapshot(state_dict, reason, priority="low", directory=None):
    directory = directory or PATHS.snapshots
    directory.mkdir(parents=True, exist_ok=True)
    snap = copy.deepcopy(state_dict)
    snap.setdefault("meta", {})
    snap["meta"]["snapshot_reason"] = reason
    snap["meta"]["snapshot_priority"] = priority

    target_path = directory / f"state_{datetime.now().strftime(_FILENAME_TS)}.json"
    with open(target_path, "w", encoding="utf-8") as f:
        json.dump(snap, f, indent=2)
    log.debug(f"Saved '{priority}' snapshot for '{reason}' to {target_path}")
    return target_path

# state_20261018_140311_123456.json -> datetime(2026, 10, 18, 14, 3, 11, 123456), or None for anything else.
def _parse_snapshot_time(filename):
    stem = os.path.splitext(filename)[0]
    if not stem.startswith("state_"):
        return None
    try:
        return datetime.strptime(stem[len("state_"):], _FILENAME_TS)
    except ValueError:
        return None

# Filenames worth keeping out of `entries` (newest first): the newest, plus the closest match per retention tier.
def _select_keepers(entries, now):
    keep = {entries[0][0]}
    for tier_secs in TIERS:
        target = now.timestamp() - tier_secs
        best = min(entries, key=lambda e: abs(e[1].timestamp() - target))
        keep.add(best[0])
    return keep

# Removes every snapshot that isn't the newest or the best fit for a tier. Unrelated files are left alone.
def prune_snapshots(directory=None):
    directory = directory or PATHS.snapshots
    if not directory.is_dir():
        return 0

    entries = []
    for path in directory.iterdir():
        if not path.name.endswith(".json"):
            continue
        ts = _parse_snapshot_time(path.name)
        if ts is not None:
            entries.append((path.name, ts))
    if len(entries) <= 1:
        return 0

    entries.sort(key=lambda e: e[1], reverse=True)
    keep = _select_keepers(entries, datetime.now())

    pruned_count = 0
    for filename, _ in entries:
        if filename in keep:
            continue
        try:
            os.remove(directory / filename)
            pruned_count += 1
        except OSError:
            log.warning(f"Could not remove snapshot '{filename}'", exc_info=True)
    if pruned_count > 0:
        log.info(f"Pruned {pruned_count} snapshots from '{directory}'")
    return pruned_count


# Decides whether a snapshot request should actually produce a file. High priority always does (shift close, app
# exit); medium (transfers, settlements) is debounced; low (periodic) only once per `min_minutes`.
class SnapshotThrottle:

    def __init__(self, min_minutes=5, debounce_seconds=10.0, monotonic=time.monotonic):
        self.min_minutes = min_minutes
        self.debounce_seconds = debounce_seconds
        self._monotonic = monotonic
        self._last = None

    def should_snapshot(self, priority):
        if priority == "high" or self._last is None:
            return True
        since = self._monotonic() - self._last
        if priority == "medium":
            return since > self.debounce_seconds
        return since > self.min_minutes * 60

    def mark_done(self):
        self._last = self._monotonic()
