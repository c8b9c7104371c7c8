import sys
from PySide6.QtCore import Qt, QTimer
from PySide6.QtGui import QFont
from PySide6.QtWidgets import (
    QApplication,
    QDialog,
    QInputDialog,
    QLabel,
    QMainWindow,
    QMenu,
    QMessageBox,
    QScrollArea,
    QVBoxLayout,
    QWidget,
)
from kt.common.logger import log
from kt.core import config
from kt.core.api import RentalApi
from kt.core.engine import TimerEngine
from kt.core.errors import KartTimerError, TransferConflictError
from kt.core.images import ImageCache
from kt.core.ledger import pending_sessions
from kt.core.models import StationStatus
from kt.core.snapshot import SnapshotThrottle, create_snapshot, prune_snapshots
from kt.core.store import StationStore
from kt.ui.dialogs import ConfigDialog, LoginDialog
from kt.ui.scheduler import QtScheduler
from kt.ui.widgets import (
    STYLESHEET,
    apply_view,
    build_footer,
    build_station_row,
    set_login_state,
    set_thumbnail,
)
from kt.ui.workers import OutboxSender, TaskRunner, fetch_catalog
from kt.util import format_amount, format_time

# Alarm beep cadence while any ride is completed and unacknowledged.
_ALARM_MS = 1500


# ---------------------------------------------------------------------------
# Main window
# ---------------------------------------------------------------------------

# The employee's station board. One row per kart, the running total in the footer.
class MainWindow(QMainWindow):

    def __init__(self, store, api, runner=None, images=None):
        super().__init__()
        self.setWindowTitle("KartTimer")
        self.store = store
        self.api = api
        self.currency = store.settings.get("currency", "C$")

        # Network calls never run on this thread; see kt.ui.workers.
        self._runner = runner or TaskRunner(parent=self)
        self._outbox_sender = OutboxSender(store, self._runner, on_sent=self._on_logs_sent)
        self._images = images or ImageCache()
        self._catalog_loading = False

        self._scheduler = QtScheduler(self)
        self.engine = TimerEngine(
            store,
            self._scheduler,
            clock=store.clock,
            on_change=self._refresh_station,
            on_complete=self._on_station_completed,
            on_settled=self._on_settled,
        )
        self._widgets = {}  # station id -> widget dict
        self._snapshots = SnapshotThrottle(store.settings.get("snapshot_min_minutes", 5))

        # -- Build UI skeleton --
        central = QWidget()
        self.setCentralWidget(central)
        self._main_lay = QVBoxLayout(central)
        self._main_lay.setContentsMargins(10, 10, 10, 10)

        self._scroll = QScrollArea()
        self._scroll.setWidgetResizable(True)
        self._grid_widget = QWidget()
        self._grid = QVBoxLayout(self._grid_widget)
        self._grid.setContentsMargins(0, 0, 0, 0)
        self._grid.setSpacing(2)
        self._scroll.setWidget(self._grid_widget)
        self._main_lay.addWidget(self._scroll, 1)

        footer, fw = build_footer(
            self._total_text(), self._user_text(),
            logged_in=self.store.current_user() is not None,
            on_refresh=self._on_refresh,
            on_close_shift=self._on_close_shift,
            on_login=self._on_login,
            on_config=self._on_config,
        )
        self._footer = fw
        self._main_lay.addWidget(footer)
        self.setStyleSheet(STYLESHEET)

        # -- Alarm, looping until every completed ride is acknowledged --
        self._alarm = QTimer(self)
        self._alarm.setInterval(_ALARM_MS)
        self._alarm.timeout.connect(QApplication.beep)

        # -- Cached stations and reload recovery first, the fresh list replaces them when it arrives --
        self.engine.restore()
        self._rebuild_rows()
        self._update_alarm()
        self._load_remote()

        # -- Housekeeping: outbox retries and periodic snapshots --
        self._housekeeping = QTimer(self)
        self._housekeeping.timeout.connect(self._on_housekeeping)
        self._housekeeping.start(int(store.settings.get("outbox_retry_seconds", 30)) * 1000)
        QTimer.singleShot(0, self._flush_outbox)

    # ------------------------------------------------------------------ #
    #  Remote data                                                         #
    # ------------------------------------------------------------------ #

    # Fetch stations and rate tiers in the background. Returns False if a fetch is already out.
    def _load_remote(self):
        if self._catalog_loading:
            return False
        self._catalog_loading = True
        self.statusBar().showMessage("Loading stations...")
        self._runner.submit(fetch_catalog, self.api, on_done=self._on_catalog, on_error=self._on_catalog_failed)
        return True

    # On failure the store keeps whatever it had cached from the last good fetch.
    def _on_catalog(self, catalog):
        self._catalog_loading = False
        self.statusBar().clearMessage()
        if catalog["tiers"] is not None:
            self.store.set_tiers(catalog["tiers"])
        else:
            self.statusBar().showMessage("Rates unavailable, using saved durations.", 10_000)
        if catalog["stations"] is not None:
            self.store.sync_stations(catalog["stations"])
        else:
            self.statusBar().showMessage("Server unreachable, showing saved stations.", 10_000)
        for error in catalog["errors"]:
            log.warning(f"Could not fetch {error}")
        self._rebuild_rows()

    def _on_catalog_failed(self, message):
        self._catalog_loading = False
        log.warning(f"Catalog fetch failed, keeping cached stations: {message}")
        self.statusBar().showMessage("Server unreachable, showing saved stations.", 10_000)

    def _on_refresh(self):
        self._load_remote()

    # ------------------------------------------------------------------ #
    #  Row building                                                        #
    # ------------------------------------------------------------------ #

    def _rebuild_rows(self):
        """Tear down and recreate every station row."""
        self._widgets.clear()
        while self._grid.count():
            item = self._grid.takeAt(0)
            w = item.widget()
            if w:
                w.hide()
                w.deleteLater()

        if not self.store.stations:
            lbl = QLabel("No stations available. Contact an administrator.")
            lbl.setFont(QFont("Calibri", 13))
            lbl.setAlignment(Qt.AlignCenter)
            self._grid.addWidget(lbl)
        else:
            for station in self.store.stations.values():
                rc, wd = build_station_row(
                    station, self.store.tiers, self.engine.view(station.id), self.currency,
                    on_toggle=self._on_toggle,
                    on_stop=self._on_stop,
                    on_finalize=self._on_finalize,
                    on_another_round=self._on_another_round,
                    on_duration=self._on_duration,
                )
                rc.setContextMenuPolicy(Qt.CustomContextMenu)
                rc.customContextMenuRequested.connect(
                    lambda pos, sid=station.id, w=rc: self._on_row_context_menu(sid, w.mapToGlobal(pos))
                )
                self._widgets[station.id] = wd
                self._grid.addWidget(rc)
                self._load_thumbnail(station)
        self._grid.addStretch()
        self._update_footer()

    # Cached bytes go straight on the row; otherwise fetch in the background and cache them for next time.
    def _load_thumbnail(self, station):
        if not station.image:
            return
        cached = self._images.get(station.image)
        if cached is not None:
            set_thumbnail(self._widgets[station.id], cached)
            return
        self._runner.submit(
            self.api.fetch_image, station.image,
            on_done=lambda data, s=station: self._on_thumbnail(s, data),
            on_error=lambda message, s=station: log.info(f"No thumbnail for '{s.id}': {message}"),
        )

    # The row may have been rebuilt or removed while the image was downloading.
    def _on_thumbnail(self, station, data):
        w = self._widgets.get(station.id)
        if w is None:
            return
        if set_thumbnail(w, data):
            self._images.put(station.image, data)
        else:
            log.info(f"Station '{station.id}' image is not a picture Qt can load")

    def _refresh_station(self, station_id):
        w = self._widgets.get(station_id)
        if w is not None:
            apply_view(w, self.engine.view(station_id), self.currency)
        self._update_footer()

    def _update_footer(self):
        self._footer["total"].setText(self._total_text())
        self._footer["user"].setText(self._user_text())
        set_login_state(self._footer["login_btn"], self.store.current_user() is not None)

    def _total_text(self):
        return f"Total: {format_amount(self.store.total(), self.currency)}"

    def _user_text(self):
        user = self.store.current_user()
        return user.username if user else "Employee"

    # ------------------------------------------------------------------ #
    #  Button handlers                                                     #
    # ------------------------------------------------------------------ #

    # Runs an engine action, turning any KartTimerError into a warning box. The station stays in its last good state.
    def _run(self, action, *args, **kwargs):
        try:
            return action(*args, **kwargs)
        except KartTimerError as exc:
            log.info(f"Rejected {getattr(action, '__name__', action)}{args}: {exc}")
            QMessageBox.warning(self, "KartTimer", str(exc))
            return None

    def _on_toggle(self, station_id):
        self._run(self.engine.toggle, station_id)

    def _on_stop(self, station_id):
        if self.store.settings.get("confirm_stop", True):
            name = self.store.station(station_id).label
            if QMessageBox.question(
                    self, "Confirm Stop",
                    f"Stop '{name}' now? The full price is still charged."
            ) != QMessageBox.Yes:
                return
        self._run(self.engine.stop_early, station_id)

    def _on_finalize(self, station_id):
        self._run(self.engine.finalize, station_id)
        self._update_alarm()

    def _on_another_round(self, station_id):
        self._run(self.engine.another_round, station_id)
        self._update_alarm()

    def _on_duration(self, station_id, minutes):
        self._run(self.engine.change_duration, station_id, minutes)
        # Snap the combo back if the change was refused.
        self._refresh_station(station_id)

    def _on_station_completed(self, station_id):
        station = self.store.station(station_id)
        label = station.label if station else station_id
        self.statusBar().showMessage(f"{label} finished its ride!")
        self._update_alarm()

    def _on_settled(self, station_id, session):
        self._try_snapshot(reason="settlement", priority="medium")
        QTimer.singleShot(0, self._flush_outbox)

    def _update_alarm(self):
        ringing = any(
            self.engine.status(sid) is StationStatus.COMPLETED for sid in self.store.stations
        )
        if ringing and not self._alarm.isActive():
            QApplication.beep()
            self._alarm.start()
        elif not ringing and self._alarm.isActive():
            self._alarm.stop()

    # ------------------------------------------------------------------ #
    #  Context menu                                                        #
    # ------------------------------------------------------------------ #

    def _on_row_context_menu(self, station_id, global_pos):
        state = self.store.timer(station_id)
        menu = QMenu(self)
        transfer_action = menu.addAction("Transfer to...")
        reset_action = menu.addAction("Reset")
        reset_action.setEnabled(state.status is StationStatus.IDLE)
        pending = pending_sessions(state)
        confirm_actions = {}
        if pending:
            menu.addSeparator()
            for index, session in pending:
                if index == state.current_session:
                    continue
                text = f"Confirm ride {session.minutes} min, {format_time(session.duration)} ({format_amount(session.amount, self.currency)})"
                confirm_actions[menu.addAction(text)] = index

        action = menu.exec(global_pos)
        if action is None:
            return
        if action == transfer_action:
            self._on_transfer(station_id)
        elif action == reset_action:
            self._run(self.engine.reset, station_id)
        elif action in confirm_actions:
            self._run(self.engine.confirm, station_id, confirm_actions[action])

    def _on_transfer(self, station_id):
        others = [s for s in self.store.stations.values() if s.id != station_id]
        if not others:
            QMessageBox.information(self, "Transfer", "There's no other station to transfer to.")
            return
        labels = [s.label for s in others]
        choice, ok = QInputDialog.getItem(self, "Transfer", "Move this ride to:", labels, 0, False)
        if not ok:
            return
        dest = others[labels.index(choice)]
        if self.store.settings.get("confirm_transfer", True):
            if QMessageBox.question(
                    self, "Confirm Transfer",
                    f"Move everything from '{self.store.station(station_id).label}' to '{dest.label}'?"
            ) != QMessageBox.Yes:
                return
        try:
            self.engine.transfer(station_id, dest.id)
        except TransferConflictError:
            if QMessageBox.question(
                    self, "Station Busy",
                    f"'{dest.label}' already has a ride going. Overwrite it? Its ride will be kept as pending."
            ) != QMessageBox.Yes:
                log.info(f"Transfer from '{station_id}' to '{dest.id}' declined by operator")
                return
            self._run(self.engine.transfer, station_id, dest.id, overwrite=True)
        except KartTimerError as exc:
            QMessageBox.warning(self, "KartTimer", str(exc))
            return
        self._try_snapshot(reason="transfer", priority="medium")
        self._update_alarm()

    # ------------------------------------------------------------------ #
    #  Footer handlers                                                     #
    # ------------------------------------------------------------------ #

    # Same button logs in and out. Logging out only forgets the employee; every ride and queued log stays put.
    def _on_login(self):
        current = self.store.current_user()
        if current is not None:
            if QMessageBox.question(
                    self, "Log Out", f"Log out {current.username}? New rides won't be attributed to anyone."
            ) != QMessageBox.Yes:
                return
            self.store.set_user(None)
            log.info(f"Employee '{current.username}' logged out")
            self._update_footer()
            return
        dlg = LoginDialog(self, self.api, self._runner)
        if dlg.exec() == QDialog.Accepted and dlg.user is not None:
            self.store.set_user(dlg.user)
            self._update_footer()

    def _on_close_shift(self):
        if QMessageBox.question(
                self, "Close Shift",
                f"Archive {self._total_text()} and clear settled rides from the board?"
        ) != QMessageBox.Yes:
            return
        self._flush_outbox()
        self._try_snapshot(reason="shift_close", priority="high")
        self.store.close_shift()
        self._rebuild_rows()

    def _on_config(self):
        orphan_pending = [
            (f"{sid}: {session.minutes} min, {format_time(session.duration)} ({format_amount(session.amount, self.currency)})",
             sid, index)
            for sid, index, session in self.store.orphan_pending()
        ]
        dlg = ConfigDialog(
            self, dict(self.store.settings), self.store.tiers,
            on_prune_orphans=self._on_prune_orphans,
            orphan_pending=orphan_pending,
            on_confirm_orphan=self._on_confirm_orphan,
        )
        if dlg.exec() == QDialog.Accepted and dlg.changed:
            s = self.store.settings
            base_changed = dlg.chosen_api_base and dlg.chosen_api_base != s.get("api_base")
            s["api_base"] = dlg.chosen_api_base or s.get("api_base")
            s["default_minutes"] = dlg.chosen_default_minutes
            s["confirm_stop"] = dlg.chosen_confirm_stop
            s["confirm_transfer"] = dlg.chosen_confirm_transfer
            s["snapshot_min_minutes"] = dlg.chosen_snapshot_min_minutes
            self._snapshots.min_minutes = dlg.chosen_snapshot_min_minutes
            self.store.flush()
            if base_changed:
                self.api = RentalApi(config.api_base(s))
                self._on_refresh()

    def _on_prune_orphans(self):
        pruned = self.store.prune_orphans()
        QMessageBox.information(self, "KartTimer", f"Forgot {len(pruned)} removed karts.")

    # Settles a pending ride on a kart that's no longer on the board. True if it went through.
    def _on_confirm_orphan(self, station_id, index):
        try:
            self.engine.confirm(station_id, index)
        except KartTimerError as exc:
            log.info(f"Rejected confirm of '{station_id}' session {index}: {exc}")
            QMessageBox.warning(self, "KartTimer", str(exc))
            return False
        self._update_footer()
        return True

    # ------------------------------------------------------------------ #
    #  Housekeeping                                                        #
    # ------------------------------------------------------------------ #

    # Hands the queued logs to a worker and returns straight away. Acks are applied on this thread when they come back.
    def _flush_outbox(self):
        return self._outbox_sender.flush(self.api)

    def _on_logs_sent(self, count):
        if count:
            log.info(f"Delivered {count} session logs, {len(self.store.outbox)} still queued")

    def _on_housekeeping(self):
        self._flush_outbox()
        self._try_snapshot(reason="periodic", priority="low")

    def _try_snapshot(self, reason, priority="low"):
        if not self._snapshots.should_snapshot(priority):
            return None
        self.store.flush()
        path = create_snapshot(self.store.state, reason, priority)
        self._snapshots.mark_done()
        prune_snapshots()
        return path

    def closeEvent(self, event):
        try:
            self._try_snapshot(reason="app_exit", priority="high")
        except OSError as e:
            QMessageBox.warning(self, "Save Error",
                                f"Failed to save state:\n{e}")
        event.accept()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    app = QApplication(sys.argv)
    store = StationStore().init()
    api = RentalApi(config.api_base(store.settings))
    window = MainWindow(store, api)
    window.resize(1000, 600)
    window.show()
    sys.exit(app.exec())
