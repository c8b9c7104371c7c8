"""Tests for the per-station timer state machine.

Covers: kt.core.engine, driven through kt.core.store with virtual time from
kt.core.clock / kt.core.scheduler.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path

os.environ.setdefault("KT_HOME", tempfile.mkdtemp(prefix="kt_test_home_"))


def _build(path, clock):
    from kt.core.models import RateTier, Station
    from kt.core.store import StationStore

    store = StationStore(path=path, clock=clock).init()
    store.sync_stations([
        Station(id="a", name="Kart", number=1),
        Station(id="b", name="Kart", number=2),
        Station(id="c", name="Kart", number=3, price=25.0),
    ])
    store.set_tiers([RateTier(15, 10.0), RateTier(30, 18.0), RateTier(60, 30.0)])
    return store


class EngineTestCase(unittest.TestCase):

    def setUp(self):
        from kt.core.clock import ManualClock
        from kt.core.engine import TimerEngine
        from kt.core.scheduler import ManualScheduler

        self.tmpdir = tempfile.mkdtemp()
        self.path = Path(self.tmpdir) / "state.json"
        self.clock = ManualClock()
        self.scheduler = ManualScheduler(self.clock)
        self.store = _build(self.path, self.clock)
        self.completed = []
        self.settled = []
        self.changed = []
        self.engine = TimerEngine(
            self.store,
            self.scheduler,
            clock=self.clock,
            on_change=self.changed.append,
            on_complete=self.completed.append,
            on_settled=lambda sid, session: self.settled.append((sid, session)),
        )

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _run_to_completion(self, station_id, minutes=15):
        self.engine.change_duration(station_id, minutes)
        self.engine.start(station_id)
        self.scheduler.advance(minutes * 60)


# ──────────────────────────────────────────────────────────────────────────
# Running, pausing and completing
# ──────────────────────────────────────────────────────────────────────────

class TestRunning(EngineTestCase):

    def test_idle_template_uses_default_tier(self):
        from kt.core.models import StationStatus
        view = self.engine.view("a")
        self.assertIs(view.status, StationStatus.IDLE)
        self.assertEqual(view.selected_minutes, 30)
        self.assertEqual(view.amount, 18.0)
        self.assertEqual(view.elapsed, 0)
        self.assertEqual(view.percent, 0)

    def test_start_creates_one_session_and_ticks(self):
        from kt.core.models import StationStatus
        from kt.core.timer_state import ActiveSession
        self.engine.start("a")
        state = self.store.timer("a")
        self.assertIs(self.engine.status("a"), StationStatus.RUNNING)
        self.assertEqual(len(state.sessions), 1)
        self.assertIsInstance(state.current, ActiveSession)
        self.assertEqual(state.current.amount, 18.0)
        self.assertEqual(state.total, 30 * 60)
        self.assertTrue(self.scheduler.is_registered("a"))

        self.scheduler.advance(10)
        view = self.engine.view("a")
        self.assertEqual(view.elapsed, 10)
        self.assertEqual(view.remaining, 30 * 60 - 10)
        self.assertIn("a", self.changed)

    def test_start_while_running_is_rejected(self):
        from kt.core.errors import InvalidStateError
        self.engine.start("a")
        with self.assertRaises(InvalidStateError):
            self.engine.start("a")

    def test_start_without_duration_is_rejected(self):
        from kt.core.errors import ValidationError
        self.store.timer("a").selected_minutes = 0
        with self.assertRaises(ValidationError):
            self.engine.start("a")
        self.assertEqual(self.store.timer("a").sessions, [])

    def test_paused_time_does_not_count(self):
        from kt.core.models import StationStatus
        self.engine.start("a")
        self.scheduler.advance(100)
        self.engine.pause("a")
        self.assertIs(self.engine.status("a"), StationStatus.PAUSED)
        self.assertFalse(self.scheduler.is_registered("a"))

        self.clock.advance(500)
        self.assertEqual(self.engine.elapsed("a"), 100)

        self.engine.start("a")
        self.scheduler.advance(50)
        self.assertEqual(self.engine.elapsed("a"), 150)
        # Resuming never opens a second session
        self.assertEqual(len(self.store.timer("a").sessions), 1)

    def test_pause_banks_into_session(self):
        self.engine.start("a")
        self.clock.advance(42.9)
        self.engine.pause("a")
        state = self.store.timer("a")
        self.assertEqual(state.accumulated, 42)
        self.assertEqual(state.current.accumulated, 42)
        self.assertIsNone(state.started_at)

    def test_toggle_alternates(self):
        from kt.core.models import StationStatus
        self.engine.toggle("a")
        self.assertIs(self.engine.status("a"), StationStatus.RUNNING)
        self.engine.toggle("a")
        self.assertIs(self.engine.status("a"), StationStatus.PAUSED)
        self.engine.toggle("a")
        self.assertIs(self.engine.status("a"), StationStatus.RUNNING)

    def test_resume_requires_paused(self):
        from kt.core.errors import InvalidStateError
        with self.assertRaises(InvalidStateError):
            self.engine.resume("a")

    def test_pause_idle_is_rejected(self):
        from kt.core.errors import InvalidStateError
        with self.assertRaises(InvalidStateError):
            self.engine.pause("a")

    def test_completes_exactly_at_target(self):
        from kt.core.models import StationStatus
        from kt.core.timer_state import ClosedSession
        self.engine.change_duration("a", 15)
        self.engine.start("a")
        self.scheduler.advance(15 * 60 - 1)
        self.assertIs(self.engine.status("a"), StationStatus.RUNNING)
        self.assertEqual(self.completed, [])

        self.scheduler.advance(1)
        self.assertIs(self.engine.status("a"), StationStatus.COMPLETED)
        self.assertEqual(self.completed, ["a"])
        self.assertFalse(self.scheduler.is_registered("a"))

        session = self.store.timer("a").current
        self.assertIsInstance(session, ClosedSession)
        self.assertEqual(session.accumulated, 15 * 60)
        self.assertEqual(session.amount, 10.0)
        self.assertFalse(session.settled)
        view = self.engine.view("a")
        self.assertEqual(view.remaining, 0)
        self.assertEqual(view.percent, 100)

    def test_completion_alone_does_not_count(self):
        self._run_to_completion("a")
        self.assertEqual(self.engine.total(), 0)

    def test_tick_on_idle_station_is_noop(self):
        self.assertIsNone(self.engine.tick("a"))
        self.assertFalse(self.scheduler.is_registered("a"))
        self.assertEqual(self.store.timer("a").sessions, [])

    def test_elapsed_never_negative_when_clock_goes_back(self):
        self.engine.start("a")
        self.clock.advance(-30)
        self.assertEqual(self.engine.elapsed("a"), 0)


# ──────────────────────────────────────────────────────────────────────────
# Settling: finalize, stop early, another round, confirm
# ──────────────────────────────────────────────────────────────────────────

class TestSettlement(EngineTestCase):

    def test_finalize_settles_and_counts(self):
        from kt.core.models import StationStatus
        self._run_to_completion("a")
        session_id = self.store.timer("a").current.id
        self.engine.finalize("a")

        self.assertIs(self.engine.status("a"), StationStatus.IDLE)
        self.assertEqual(self.engine.total(), 10.0)
        self.assertTrue(self.store.timer("a").sessions[0].settled)
        self.assertEqual(len(self.settled), 1)
        self.assertEqual(self.store.outbox.records[0]["clientId"], session_id)
        self.assertEqual(self.store.outbox.records[0]["duration"], 15 * 60)

    def test_finalize_requires_completed(self):
        from kt.core.errors import InvalidStateError
        self.engine.start("a")
        with self.assertRaises(InvalidStateError):
            self.engine.finalize("a")

    def test_start_on_completed_is_rejected(self):
        from kt.core.errors import InvalidStateError
        self._run_to_completion("a")
        with self.assertRaises(InvalidStateError):
            self.engine.start("a")

    def test_stop_early_charges_full_amount(self):
        from kt.core.models import StationStatus
        self.engine.start("a")
        self.scheduler.advance(60)
        self.engine.stop_early("a")

        self.assertIs(self.engine.status("a"), StationStatus.IDLE)
        self.assertFalse(self.scheduler.is_registered("a"))
        session = self.store.timer("a").sessions[0]
        self.assertTrue(session.settled)
        self.assertEqual(session.accumulated, 60)
        self.assertEqual(session.amount, 18.0)
        self.assertEqual(self.engine.total(), 18.0)

    def test_stop_early_from_paused(self):
        self.engine.start("a")
        self.scheduler.advance(30)
        self.engine.pause("a")
        self.clock.advance(300)
        self.engine.stop_early("a")
        session = self.store.timer("a").sessions[0]
        self.assertEqual(session.accumulated, 30)
        self.assertTrue(session.settled)

    def test_stop_early_when_idle_is_rejected(self):
        from kt.core.errors import InvalidStateError
        with self.assertRaises(InvalidStateError):
            self.engine.stop_early("a")
        self.assertEqual(self.engine.total(), 0)

    def test_stop_early_falls_back_to_station_price(self):
        from kt.core.timer_state import ActiveSession
        state = self.store.timer("c")
        self.engine.start("c")
        # A session persisted before rates were known, on a station with a legacy fixed price
        current = state.current
        state.sessions[state.current_session] = ActiveSession(
            start=current.start, minutes=current.minutes, id=current.id)
        state.planned_amount = 0
        self.engine.stop_early("c")
        self.assertEqual(self.engine.total(), 25.0)

    def test_stop_early_after_target_passed_completes_instead(self):
        from kt.core.models import StationStatus
        self.engine.change_duration("a", 15)
        self.engine.start("a")
        # No ticks ran, the wall clock just moved past the target
        self.clock.advance(16 * 60)
        self.engine.stop_early("a")

        self.assertIs(self.engine.status("a"), StationStatus.COMPLETED)
        self.assertEqual(self.completed, ["a"])
        self.assertEqual(self.settled, [])
        session = self.store.timer("a").sessions[0]
        self.assertFalse(session.settled)
        self.assertEqual(session.accumulated, 15 * 60)
        self.assertEqual(self.engine.total(), 0)
        self.assertFalse(self.scheduler.is_registered("a"))

    def test_confirm_pending_ride_on_removed_station(self):
        from kt.core.models import Station
        self._run_to_completion("b")
        self.engine.another_round("b")
        self.store.sync_stations([Station(id="a", name="Kart", number=1)])

        self.assertEqual([(sid, index) for sid, index, _ in self.store.orphan_pending()], [("b", 0)])
        self.engine.confirm("b", 0)
        self.assertEqual(self.engine.total(), 10.0)
        self.assertEqual(self.store.orphan_pending(), [])
        self.assertEqual(self.store.outbox.records[-1]["stationId"], "b")

    def test_another_round_leaves_session_pending(self):
        from kt.core.models import StationStatus
        self._run_to_completion("a")
        self.engine.another_round("a")

        self.assertIs(self.engine.status("a"), StationStatus.IDLE)
        self.assertEqual(self.engine.total(), 0)
        self.assertEqual(self.engine.view("a").pending, 1)

        # The kart is free for the next ride
        self.engine.start("a")
        self.assertEqual(len(self.store.timer("a").sessions), 2)
        self.assertEqual(self.store.timer("a").current_session, 1)

        self.engine.confirm("a", 0)
        self.assertEqual(self.engine.total(), 10.0)
        self.assertEqual(self.engine.view("a").pending, 0)

    def test_confirm_current_finalizes(self):
        from kt.core.models import StationStatus
        self._run_to_completion("a")
        self.engine.confirm("a", self.store.timer("a").current_session)
        self.assertIs(self.engine.status("a"), StationStatus.IDLE)
        self.assertEqual(self.engine.total(), 10.0)

    def test_confirm_settled_session_is_rejected(self):
        from kt.core.errors import InvalidStateError
        self._run_to_completion("a")
        self.engine.finalize("a")
        with self.assertRaises(InvalidStateError):
            self.engine.confirm("a", 0)
        with self.assertRaises(InvalidStateError):
            self.engine.confirm("a", 5)
        self.assertEqual(self.engine.total(), 10.0)

    def test_total_sums_settled_across_stations(self):
        self._run_to_completion("a", minutes=15)
        self.engine.finalize("a")
        self.engine.start("b")
        self.scheduler.advance(5)
        self.engine.stop_early("b")
        self._run_to_completion("c", minutes=60)
        self.assertEqual(self.engine.total(), 10.0 + 18.0)
        self.engine.finalize("c")
        self.assertEqual(self.engine.total(), 10.0 + 18.0 + 30.0)

    def test_settled_session_ids_are_queued_once(self):
        self._run_to_completion("a")
        self.engine.finalize("a")
        session = self.store.timer("a").sessions[0]
        self.store.record_settlement("a", session)
        self.assertEqual(len(self.store.outbox), 1)


# ──────────────────────────────────────────────────────────────────────────
# Duration and reset
# ──────────────────────────────────────────────────────────────────────────

class TestDurationAndReset(EngineTestCase):

    def test_change_duration_updates_template(self):
        self.engine.change_duration("a", 60)
        view = self.engine.view("a")
        self.assertEqual(view.selected_minutes, 60)
        self.assertEqual(view.amount, 30.0)

    def test_unknown_duration_is_rejected(self):
        from kt.core.errors import ValidationError
        with self.assertRaises(ValidationError):
            self.engine.change_duration("a", 20)
        self.assertEqual(self.store.timer("a").selected_minutes, 30)

    def test_duration_locked_once_session_exists(self):
        from kt.core.errors import DurationLockedError
        self.engine.start("a")
        self.scheduler.advance(5)
        self.engine.pause("a")
        with self.assertRaises(DurationLockedError):
            self.engine.change_duration("a", 60)
        self.assertEqual(self.store.timer("a").total, 30 * 60)

    def test_reset_only_while_idle(self):
        from kt.core.errors import InvalidStateError
        self.engine.start("a")
        with self.assertRaises(InvalidStateError):
            self.engine.reset("a")

    def test_reset_clears_leftover_counters(self):
        state = self.store.timer("a")
        state.accumulated = 12
        state.total = 900
        self.engine.reset("a")
        self.assertEqual(state.accumulated, 0)
        self.assertEqual(state.total, 0)
        self.assertEqual(state.selected_minutes, 30)

    def test_unknown_station(self):
        from kt.core.errors import UnknownStationError
        with self.assertRaises(UnknownStationError):
            self.engine.start("zzz")


# ──────────────────────────────────────────────────────────────────────────
# Transfer
# ──────────────────────────────────────────────────────────────────────────

class TestTransfer(EngineTestCase):

    def test_transfer_moves_running_session(self):
        from kt.core.models import StationStatus
        self.engine.start("a")
        self.scheduler.advance(120)
        session_id = self.store.timer("a").current.id
        self.engine.transfer("a", "b")

        self.assertIs(self.engine.status("a"), StationStatus.IDLE)
        self.assertEqual(self.store.timer("a").sessions, [])
        self.assertIs(self.engine.status("b"), StationStatus.RUNNING)
        self.assertEqual(self.store.timer("b").current.id, session_id)
        self.assertEqual(self.engine.elapsed("b"), 120)
        self.assertFalse(self.scheduler.is_registered("a"))
        self.assertTrue(self.scheduler.is_registered("b"))

        self.scheduler.advance(10)
        self.assertEqual(self.engine.elapsed("b"), 130)

    def test_transfer_appends_after_destination_history(self):
        self._run_to_completion("b")
        self.engine.finalize("b")
        self.engine.start("a")
        self.scheduler.advance(5)
        self.engine.transfer("a", "b")

        dest = self.store.timer("b")
        self.assertEqual(len(dest.sessions), 2)
        self.assertTrue(dest.sessions[0].settled)
        self.assertEqual(dest.current_session, 1)
        self.assertEqual(self.engine.total(), 10.0)

    def test_transfer_preserves_total(self):
        self._run_to_completion("a")
        self.engine.finalize("a")
        before = self.engine.total()
        self.engine.transfer("a", "b")
        self.assertEqual(self.engine.total(), before)

    def test_conflict_without_overwrite_changes_nothing(self):
        from kt.core.errors import TransferConflictError
        self.engine.start("a")
        self.engine.start("b")
        self.scheduler.advance(20)
        with self.assertRaises(TransferConflictError):
            self.engine.transfer("a", "b")
        self.assertEqual(len(self.store.timer("a").sessions), 1)
        self.assertEqual(len(self.store.timer("b").sessions), 1)
        self.assertTrue(self.scheduler.is_registered("a"))
        self.assertTrue(self.scheduler.is_registered("b"))

    def test_overwrite_parks_destination_session(self):
        from kt.core.models import StationStatus
        from kt.core.ledger import pending_sessions
        self.engine.start("b")
        self.scheduler.advance(30)
        self.engine.start("a")
        self.scheduler.advance(60)
        self.engine.transfer("a", "b", overwrite=True)

        dest = self.store.timer("b")
        self.assertIs(self.engine.status("b"), StationStatus.RUNNING)
        self.assertEqual(len(dest.sessions), 2)
        self.assertEqual(dest.current_session, 1)
        self.assertEqual(self.engine.elapsed("b"), 60)
        parked = pending_sessions(dest)
        self.assertEqual(len(parked), 1)
        self.assertEqual(parked[0][1].accumulated, 90)
        self.assertEqual(self.engine.total(), 0)

    def test_transfer_rejections(self):
        from kt.core.errors import TransferError
        self.engine.start("a")
        with self.assertRaises(TransferError):
            self.engine.transfer("a", "a")
        with self.assertRaises(TransferError):
            self.engine.transfer("a", "nope")
        with self.assertRaises(TransferError):
            self.engine.transfer("c", "b")
        self.assertEqual(len(self.store.timer("a").sessions), 1)


# ──────────────────────────────────────────────────────────────────────────
# End-to-end billing scenarios
# ──────────────────────────────────────────────────────────────────────────

class TestBillingScenarios(EngineTestCase):

    def setUp(self):
        super().setUp()
        from kt.core.models import RateTier
        self.store.set_tiers([RateTier(15, 30.0), RateTier(30, 50.0)])

    def test_thirty_minutes_complete_once_after_1800_ticks(self):
        self.engine.start("a")
        fired = self.scheduler.advance(1800)
        self.assertEqual(fired, 1800)
        self.assertEqual(self.completed, ["a"])
        self.assertEqual(self.store.timer("a").accumulated, 1800)
        self.scheduler.advance(600)
        self.assertEqual(self.completed, ["a"])

    def test_elapsed_monotonic_while_running_and_flat_while_paused(self):
        self.engine.start("a")
        seen = []
        for _ in range(5):
            self.scheduler.advance(7)
            seen.append(self.engine.elapsed("a"))
        self.assertEqual(seen, sorted(seen))
        self.engine.pause("a")
        frozen = self.engine.elapsed("a")
        self.clock.advance(120)
        self.assertEqual(self.engine.elapsed("a"), frozen)

    def test_settle_then_aggregate(self):
        self.engine.start("a")
        self.scheduler.advance(1800)
        self.assertEqual(self.engine.total(), 0)
        self.engine.finalize("a")
        self.assertEqual(self.engine.total(), 50.0)

    def test_stop_after_five_minutes_charges_full_tier(self):
        self.engine.start("a")
        self.scheduler.advance(300)
        self.engine.stop_early("a")
        session = self.store.timer("a").sessions[0]
        self.assertEqual(session.amount, 50.0)
        self.assertEqual(session.duration, 300)
        self.assertTrue(session.settled)

    def test_repeated_idle_duration_changes_only_touch_template(self):
        for minutes in (15, 30, 15):
            self.engine.change_duration("a", minutes)
        state = self.store.timer("a")
        self.assertEqual(state.sessions, [])
        self.assertEqual(state.selected_minutes, 15)
        self.assertEqual(state.planned_amount, 30.0)

    def test_transfer_history_to_empty_station(self):
        from kt.core.models import StationStatus
        for _ in range(2):
            self.engine.start("a")
            self.scheduler.advance(1800)
            self.engine.finalize("a")
        self.engine.start("a")
        ids = [s.id for s in self.store.timer("a").sessions]
        self.engine.transfer("a", "b")

        self.assertEqual([s.id for s in self.store.timer("b").sessions], ids)
        self.assertEqual(self.store.timer("b").current_session, 2)
        self.assertEqual(self.store.timer("a").sessions, [])
        self.assertIs(self.engine.status("a"), StationStatus.IDLE)
        self.assertEqual(self.engine.total(), 100.0)


# ──────────────────────────────────────────────────────────────────────────
# Reload recovery
# ──────────────────────────────────────────────────────────────────────────

class TestRestore(EngineTestCase):

    def _reload(self, seconds_later):
        from kt.core.clock import ManualClock
        from kt.core.engine import TimerEngine
        from kt.core.scheduler import ManualScheduler
        from kt.core.store import StationStore

        clock = ManualClock(self.clock.now_ms() + seconds_later * 1000)
        scheduler = ManualScheduler(clock)
        store = StationStore(path=self.path, clock=clock).init()
        completed = []
        engine = TimerEngine(store, scheduler, clock=clock, on_complete=completed.append)
        engine.restore()
        return store, engine, scheduler, completed

    def test_running_session_keeps_counting_across_restart(self):
        from kt.core.models import StationStatus
        self.engine.start("a")
        self.scheduler.advance(100)
        store, engine, scheduler, _ = self._reload(50)

        self.assertIs(engine.status("a"), StationStatus.RUNNING)
        self.assertEqual(engine.elapsed("a"), 150)
        self.assertTrue(scheduler.is_registered("a"))
        self.assertEqual(store.station("a").number, 1)

    def test_session_that_ended_while_closed_completes(self):
        from kt.core.models import StationStatus
        self.engine.start("a")
        store, engine, scheduler, completed = self._reload(2 * 3600)

        self.assertIs(engine.status("a"), StationStatus.COMPLETED)
        self.assertEqual(completed, ["a"])
        self.assertFalse(scheduler.is_registered("a"))
        self.assertEqual(store.timer("a").current.accumulated, 30 * 60)

    def test_paused_and_pending_survive_restart(self):
        from kt.core.models import StationStatus
        self._run_to_completion("b")
        self.engine.another_round("b")
        self.engine.start("a")
        self.scheduler.advance(10)
        self.engine.pause("a")
        store, engine, _, _ = self._reload(600)

        self.assertIs(engine.status("a"), StationStatus.PAUSED)
        self.assertEqual(engine.elapsed("a"), 10)
        self.assertEqual(engine.view("b").pending, 1)
        self.assertEqual(engine.total(), 0)


if __name__ == "__main__":
    unittest.main()
