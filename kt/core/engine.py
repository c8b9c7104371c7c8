from kt.common.logger import log
from kt.core import ledger
from kt.core.clock import SystemClock
from kt.core.errors import (
    DurationLockedError,
    InvalidStateError,
    TransferConflictError,
    TransferError,
    ValidationError,
)
from kt.core.models import StationStatus, StationView
from kt.core.scheduler import TICK_INTERVAL_MS
from kt.core.timer_state import ActiveSession

# The per-station timer and billing state machine.
#
#   IDLE --start--> RUNNING --pause--> PAUSED --start--> RUNNING
#   RUNNING --tick reaches total--> COMPLETED --finalize--> IDLE (session settled)
#   COMPLETED --another_round--> IDLE (session left pending until confirm)
#   RUNNING/PAUSED --stop_early--> IDLE (session settled at the full planned amount)
#
# All state lives in the StationStore; this class only moves it between states, keeps one tick registered per running
# station, and flushes the store after every mutation.
class TimerEngine:

    def __init__(self, store, scheduler, clock=None, on_change=None, on_complete=None, on_settled=None):
        self.store = store
        self.scheduler = scheduler
        self.clock = clock or store.clock or SystemClock()
        self.on_change = on_change
        self.on_complete = on_complete
        self.on_settled = on_settled

    #region === Queries ===

    def status(self, station_id):
        return self.store.timer(station_id).status

    # Seconds elapsed in the station's current session, live while running. No side effects.
    def elapsed(self, station_id):
        return self.store.timer(station_id).elapsed(self.clock.now_ms())

    def view(self, station_id):
        state = self.store.timer(station_id)
        elapsed = state.elapsed(self.clock.now_ms())
        remaining = max(0, state.total - elapsed)
        percent = min(100, round(elapsed / state.total * 100)) if state.total > 0 else 0
        current = state.current
        if current is not None and current.amount is not None:
            amount = current.amount
        else:
            amount = state.planned_amount
        return StationView(
            status=state.status,
            elapsed=elapsed,
            remaining=remaining,
            percent=percent,
            amount=amount,
            selected_minutes=state.selected_minutes,
            pending=len(ledger.pending_sessions(state)),
        )

    def total(self):
        return self.store.total()

    #endregion === Queries ===

    #region === Transitions ===

    # Starts a new session from the idle template, or resumes a paused one. Resuming never creates a new session or
    # changes the target.
    def start(self, station_id):
        state = self.store.timer(station_id)
        status = state.status
        if status is StationStatus.RUNNING:
            raise InvalidStateError("This station is already running.")
        if status is StationStatus.COMPLETED:
            raise InvalidStateError("Finalize the completed session (or start another round) first.")

        now = self.clock.now_ms()
        if status is StationStatus.IDLE:
            minutes = state.selected_minutes or 0
            if minutes <= 0:
                raise ValidationError("Select a duration before starting.")
            tier = self.store.tier_for(minutes)
            session = ActiveSession(start=now, minutes=minutes, amount=tier.amount if tier else None)
            ledger.append_session(state, session)
            state.accumulated = 0
            state.total = 0
            log.info(f"Station '{station_id}' started a {minutes} minute session ({session.id})")
        else:
            log.info(f"Station '{station_id}' resumed at {state.accumulated}s")

        if not state.total:
            state.total = state.current.minutes * 60
        state.started_at = now
        state.running = True
        self.scheduler.register(station_id, TICK_INTERVAL_MS, lambda: self.tick(station_id))
        self._commit(station_id)

    def resume(self, station_id):
        if self.status(station_id) is not StationStatus.PAUSED:
            raise InvalidStateError("Only a paused station can be resumed.")
        self.start(station_id)

    # Banks the running segment into the session and stops ticking.
    def pause(self, station_id):
        state = self.store.timer(station_id)
        if not state.running:
            raise InvalidStateError("This station isn't running.")
        now = self.clock.now_ms()
        if self._reached_total(state, now):
            self._complete(station_id, state, now)
            return
        self._bank(state, now)
        self.scheduler.cancel(station_id)
        log.info(f"Station '{station_id}' paused at {state.accumulated}s of {state.total}s")
        self._commit(station_id)

    # The single start/pause button.
    def toggle(self, station_id):
        if self.status(station_id) is StationStatus.RUNNING:
            self.pause(station_id)
        else:
            self.start(station_id)

    # Called once a second per running station. Completes the session once the target is reached; a tick that lands
    # on a station that's no longer running just unregisters itself.
    def tick(self, station_id):
        state = self.store.timers.get(station_id)
        if state is None or not state.running or state.started_at is None:
            self.scheduler.cancel(station_id)
            return None
        now = self.clock.now_ms()
        if self._reached_total(state, now):
            self._complete(station_id, state, now)
        else:
            self._notify(station_id)
        return self.view(station_id)

    # Ends the session before the target. The customer pays the full tier price regardless of time used. If the
    # target already passed (a tick was missed), the ride completed on its own and goes through completion instead.
    def stop_early(self, station_id):
        state = self.store.timer(station_id)
        if state.status not in (StationStatus.RUNNING, StationStatus.PAUSED):
            raise InvalidStateError("There's no session in progress to stop.")
        now = self.clock.now_ms()
        if self._reached_total(state, now):
            self._complete(station_id, state, now)
            return
        if state.running:
            self._bank(state, now)
        self.scheduler.cancel(station_id)

        session = state.current
        used = min(state.accumulated, state.total) if state.total > 0 else state.accumulated
        closed = ledger.close_session(
            state,
            state.current_session,
            end=now,
            accumulated=used,
            amount=self._charge_amount(station_id, state, session),
            settled=True,
        )
        state.clear_timing()
        log.info(f"Station '{station_id}' stopped early after {used}s, charged {closed.amount}")
        self._settled(station_id, closed)
        self._commit(station_id)

    # Operator acknowledges a completed session: it's settled and the station returns to its idle template.
    def finalize(self, station_id):
        state = self.store.timer(station_id)
        if state.status is not StationStatus.COMPLETED:
            raise InvalidStateError("Only a completed session can be finalized.")
        settled = ledger.settle(state, state.current_session)
        state.clear_timing()
        log.info(f"Station '{station_id}' finalized session {settled.id}, charged {settled.amount}")
        self._settled(station_id, settled)
        self._commit(station_id)

    # Frees a completed station for the next customer without settling the finished session. That session stays
    # pending and keeps out of the total until it's confirmed.
    def another_round(self, station_id):
        state = self.store.timer(station_id)
        if state.status is not StationStatus.COMPLETED:
            raise InvalidStateError("Another round is only available once the session has completed.")
        pending = state.current
        state.clear_timing()
        log.info(f"Station '{station_id}' moved on to another round, session {pending.id} left pending")
        self._commit(station_id)

    # Settles a pending session (one left behind by another_round or a transfer overwrite).
    def confirm(self, station_id, index):
        state = self.store.timer(station_id)
        if index == state.current_session:
            self.finalize(station_id)
            return
        if not 0 <= index < len(state.sessions):
            raise InvalidStateError(f"Station '{station_id}' has no session {index}.")
        settled = ledger.settle(state, index)
        log.info(f"Station '{station_id}' confirmed pending session {settled.id}")
        self._settled(station_id, settled)
        self._commit(station_id)

    # Clears leftover counters on an idle station. Sessions are never touched.
    def reset(self, station_id):
        state = self.store.timer(station_id)
        if state.status is not StationStatus.IDLE:
            raise InvalidStateError("Reset is only available while the station is idle.")
        self.scheduler.cancel(station_id)
        state.clear_timing()
        self._commit(station_id)

    # Picks the duration tier for the next session. Locked once a session exists, so a running or paused ride can't
    # be retargeted by accident.
    def change_duration(self, station_id, minutes):
        state = self.store.timer(station_id)
        if state.current is not None:
            raise DurationLockedError("The duration is locked while a session is in progress or awaiting finalization.")
        tier = self.store.tier_for(minutes)
        if tier is None or minutes <= 0:
            raise ValidationError(f"{minutes} minutes isn't an available duration.")
        state.selected_minutes = tier.minutes
        state.planned_amount = tier.amount
        self._commit(station_id)

    # Moves a station's whole ledger and live timing to another station, e.g. when a kart breaks down mid-ride. The
    # source ends up idle and empty. If the destination already has activity the caller has to pass overwrite=True;
    # the destination's own session is then parked as pending instead of being dropped.
    def transfer(self, source_id, dest_id, overwrite=False):
        if source_id == dest_id:
            raise TransferError("Pick a different station to transfer to.")
        if not self.store.has_station(dest_id):
            raise TransferError(f"Station '{dest_id}' doesn't exist.")
        if source_id not in self.store.timers and not self.store.has_station(source_id):
            raise TransferError(f"Station '{source_id}' doesn't exist.")
        source = self.store.timer(source_id)
        if not source.sessions and not source.has_activity:
            raise TransferError("There's nothing to transfer from this station.")

        dest = self.store.timer(dest_id)
        if dest.has_activity:
            if not overwrite:
                raise TransferConflictError(source_id, dest_id)
            self._park(dest_id, dest)

        now = self.clock.now_ms()
        if source.running and source.started_at is not None and source.started_at > now:
            source.started_at = now
        self.scheduler.cancel(source_id)
        ledger.move_sessions(source, dest)
        if dest.running:
            self.scheduler.register(dest_id, TICK_INTERVAL_MS, lambda: self.tick(dest_id))
        log.info(f"Transferred {len(dest.sessions)} sessions from '{source_id}' to '{dest_id}'")
        self._commit(source_id, dest_id)

    # Rebuilds live behaviour after StationStore.init(): clamps clocks, re-registers ticks, and completes any session
    # whose target passed while the app was closed.
    def restore(self):
        now = self.clock.now_ms()
        for station_id, state in list(self.store.timers.items()):
            if not state.running:
                continue
            if state.started_at is None or state.started_at > now:
                state.started_at = now
            if self._reached_total(state, now):
                self._complete(station_id, state, now)
            else:
                self.scheduler.register(station_id, TICK_INTERVAL_MS, lambda sid=station_id: self.tick(sid))
                log.debug(f"Restored running timer for '{station_id}' at {state.elapsed(now)}s")

    #endregion === Transitions ===

    #region === Helpers ===

    @staticmethod
    def _reached_total(state, now):
        return state.total > 0 and state.elapsed(now) >= state.total

    @staticmethod
    def _bank(state, now):
        delta = state.segment_seconds(now)
        state.accumulated += delta
        current = state.current
        if isinstance(current, ActiveSession):
            current.accumulated += delta
        state.started_at = None
        state.running = False

    # The amount owed for a session: its tier amount, else the station's planned amount, else the station's legacy
    # fixed price.
    def _charge_amount(self, station_id, state, session):
        if session is not None and session.amount is not None:
            return session.amount
        if state.planned_amount:
            return state.planned_amount
        station = self.store.station(station_id)
        if station is not None and station.price:
            return station.price
        return 0

    def _complete(self, station_id, state, now):
        session = state.current
        self.scheduler.cancel(station_id)
        state.accumulated = state.total
        state.running = False
        state.started_at = None
        closed = ledger.close_session(
            state,
            state.current_session,
            end=now,
            accumulated=state.total,
            amount=self._charge_amount(station_id, state, session),
            settled=False,
        )
        log.info(f"Station '{station_id}' completed session {closed.id} ({closed.minutes} min), awaiting finalization")
        self._commit(station_id)
        if self.on_complete is not None:
            self.on_complete(station_id)

    # Closes whatever the destination of an overwrite transfer had going as a pending session, then idles it.
    def _park(self, station_id, state):
        now = self.clock.now_ms()
        current = state.current
        if isinstance(current, ActiveSession):
            if state.running:
                self._bank(state, now)
            ledger.close_session(
                state,
                state.current_session,
                end=now,
                accumulated=min(state.accumulated, state.total) if state.total else state.accumulated,
                amount=self._charge_amount(station_id, state, current),
                settled=False,
            )
            log.warning(f"Station '{station_id}' session {current.id} was overwritten by a transfer, left pending")
        self.scheduler.cancel(station_id)
        state.clear_timing()

    def _settled(self, station_id, session):
        self.store.record_settlement(station_id, session)
        if self.on_settled is not None:
            self.on_settled(station_id, session)

    def _notify(self, *station_ids):
        if self.on_change is None:
            return
        for station_id in station_ids:
            self.on_change(station_id)

    def _commit(self, *station_ids):
        self.store.flush()
        self._notify(*station_ids)

    #endregion === Helpers ===
