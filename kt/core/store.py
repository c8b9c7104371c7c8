from datetime import datetime
from kt.common.logger import log
from kt.core import config, ledger
from kt.core.clock import SystemClock
from kt.core.errors import UnknownStationError
from kt.core.models import DEFAULT_MINUTES, FALLBACK_TIERS, RateTier, Station, User
from kt.core.outbox import LogOutbox, build_log_record
from kt.core.timer_state import TimerState

# Single owner of every station's TimerState plus the station/tier lists they're timed against. Created once by the
# app root and handed to the TimerEngine. Reading happens once in init(); every mutation ends with flush(), so
# state.json always holds the last good state (last writer wins, there's only ever one writer).
class StationStore:

    def __init__(self, path=None, clock=None):
        self.path = path or config.STATE_PATH
        self.clock = clock or SystemClock()
        self.state = config.build_default_state()
        self.timers = {}          # station id -> TimerState, including orphans
        self.stations = {}        # station id -> Station, in display order
        self.tiers = list(FALLBACK_TIERS)
        self.outbox = LogOutbox(self.state["outbox"])

    #region === Lifecycle ===

    # Loads state.json and rebuilds each persisted TimerState. A malformed entry is dropped with a warning, so that
    # station simply starts at idle; nothing is fabricated in its place.
    def init(self):
        self.state = config.load_state(self.path)
        now = self.clock.now_ms()
        self.timers = {}
        for station_id, raw in self.state["stations"].items():
            try:
                self.timers[station_id] = ledger.import_state(raw, now)
            except (ValueError, TypeError, KeyError):
                log.warning(f"Discarding malformed persisted timer for station '{station_id}'", exc_info=True)

        cached_stations = []
        for raw in self.state["cache"]["stations"]:
            try:
                cached_stations.append(Station.from_dict(raw))
            except (ValueError, TypeError, AttributeError):
                log.warning(f"Ignoring malformed cached station {raw!r}")
        if cached_stations:
            self.sync_stations(cached_stations, persist=False)

        cached_tiers = []
        for raw in self.state["cache"]["tiers"]:
            try:
                cached_tiers.append(RateTier.from_dict(raw))
            except (KeyError, ValueError, TypeError):
                log.warning(f"Ignoring malformed cached rate tier {raw!r}")
        self.set_tiers(cached_tiers, persist=False)

        self.outbox = LogOutbox(self.state["outbox"])
        log.info(f"Station store initialized with {len(self.timers)} timers, {len(self.stations)} stations, {len(self.outbox)} queued logs")
        return self

    # Serializes every timer back into the state dict and writes it to disk.
    def flush(self):
        self.state["stations"] = {sid: ledger.export_state(t) for sid, t in self.timers.items()}
        self.state["outbox"] = self.outbox.records
        config.save_state(self.state, self.path)

    #endregion === Lifecycle ===

    #region === Stations and tiers ===

    @property
    def settings(self):
        return self.state["settings"]

    def sync_stations(self, stations, persist=True):
        self.stations = {s.id: s for s in stations}
        for station_id in self.stations:
            self.timer(station_id)
        self.state["cache"]["stations"] = [s.to_dict() for s in stations]
        orphans = self.orphans()
        if orphans:
            log.info(f"{len(orphans)} persisted timers have no matching station: {', '.join(orphans)}")
        if persist:
            self.flush()

    # An empty tier list means the rates couldn't be loaded; the static fallback keeps the board usable.
    def set_tiers(self, tiers, persist=True):
        if tiers:
            self.tiers = sorted({t.minutes: t for t in tiers}.values(), key=lambda t: t.minutes)
            self.state["cache"]["tiers"] = [t.to_dict() for t in self.tiers]
        else:
            log.warning("No rate tiers available, using fallback durations.")
            self.tiers = list(FALLBACK_TIERS)
        # Refresh idle templates so their preview amount matches the new rates.
        for state in self.timers.values():
            if state.current is None:
                self._apply_template(state, state.selected_minutes)
        if persist:
            self.flush()

    def tier_for(self, minutes):
        return next((t for t in self.tiers if t.minutes == minutes), None)

    def station(self, station_id):
        return self.stations.get(station_id)

    def has_station(self, station_id):
        return station_id in self.stations

    # Returns the station's TimerState, creating it on first use for any station in the current list.
    def timer(self, station_id):
        state = self.timers.get(station_id)
        if state is not None:
            return state
        if station_id not in self.stations:
            raise UnknownStationError(f"Unknown station '{station_id}'")
        state = TimerState()
        self._apply_template(state, None)
        self.timers[station_id] = state
        log.debug(f"Created timer state for station '{station_id}'")
        return state

    def _apply_template(self, state, minutes):
        tier = self.tier_for(minutes) if minutes is not None else None
        if tier is None:
            default = self.settings.get("default_minutes", DEFAULT_MINUTES)
            tier = self.tier_for(default) or self.tiers[0]
        state.selected_minutes = tier.minutes
        state.planned_amount = tier.amount

    def orphans(self):
        return [sid for sid in self.timers if sid not in self.stations]

    def prune_orphans(self):
        orphans = self.orphans()
        for station_id in orphans:
            del self.timers[station_id]
        if orphans:
            log.info(f"Pruned {len(orphans)} orphaned timers")
            self.flush()
        return orphans

    # (station id, index, session) for every unsettled closed session on a removed station. Those have no row on the
    # board, so this is the only way to reach them for confirmation.
    def orphan_pending(self):
        return [
            (station_id, index, session)
            for station_id in self.orphans()
            for index, session in ledger.pending_sessions(self.timers[station_id])
        ]

    #endregion === Stations and tiers ===

    #region === Ledger ===

    def total(self):
        return ledger.aggregate_total(self.timers)

    def current_user(self):
        username = self.settings.get("username")
        if not username:
            return None
        return User(username=username, role=self.settings.get("role") or "employee")

    def set_user(self, user):
        self.settings["username"] = user.username if user else None
        self.settings["role"] = user.role if user else "employee"
        self.flush()

    # Queues the log record for a just-settled session. Orphaned stations still get logged under their id.
    def record_settlement(self, station_id, session, comment=None):
        station = self.stations.get(station_id) or Station(id=station_id, name="Kart")
        record = build_log_record(station, session, username=self.settings.get("username"), comment=comment)
        self.outbox.enqueue(record)

    # Archives the whole state as a closed shift, then drops settled sessions from the live ledger. Unsettled and
    # in-progress sessions carry over into the next shift untouched.
    def close_shift(self, boundary_dt=None):
        self.flush()
        boundary_dt = boundary_dt or datetime.now().astimezone()
        archive_path = config.save_completed_shift(self.state, boundary_dt)
        cleared = 0
        for state in self.timers.values():
            keep = []
            new_current = None
            for i, session in enumerate(state.sessions):
                if session.settled:
                    cleared += 1
                    continue
                if i == state.current_session:
                    new_current = len(keep)
                keep.append(session)
            state.sessions = keep
            state.current_session = new_current
        self.flush()
        log.info(f"Closed shift, archived to '{archive_path}' and cleared {cleared} settled sessions")
        return archive_path

    #endregion === Ledger ===
