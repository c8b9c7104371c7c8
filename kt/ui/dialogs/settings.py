"""Settings dialog for the station board."""

from PySide6.QtCore import Qt, QUrl
from PySide6.QtGui import QDesktopServices, QFont
from PySide6.QtWidgets import (
    QComboBox,
    QDialog,
    QFrame,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QListWidget,
    QListWidgetItem,
    QPushButton,
    QSpinBox,
    QVBoxLayout,
)
from kt.common.setup import PATHS

# Single page settings dialog. Opens when the employee clicks the gear icon on the board.
class ConfigDialog(QDialog):

    def __init__(self, parent, cfg, tiers, on_prune_orphans, orphan_pending=(), on_confirm_orphan=None):
        super().__init__(parent)
        self.setWindowTitle("Settings")
        self.setWindowFlags(self.windowFlags() | Qt.WindowStaysOnTopHint)
        self.setModal(True)

        # Output attributes, read by MainWindow after the dialog closes
        self.chosen_api_base = cfg.get("api_base", "")
        self.chosen_default_minutes = cfg.get("default_minutes", 30)
        self.chosen_confirm_stop = cfg.get("confirm_stop", True)
        self.chosen_confirm_transfer = cfg.get("confirm_transfer", True)
        self.chosen_snapshot_min_minutes = cfg.get("snapshot_min_minutes", 5)
        self.changed = False

        lay = QVBoxLayout(self)
        lay.setSpacing(12)

        # API base
        self._api_base = QLineEdit(self.chosen_api_base)
        self._api_base.setMinimumWidth(260)
        self._add_row(lay, "Server:", self._api_base,
                      "Base URL of the rental service that provides stations and rates and records rides.")

        # Default duration
        self._default_minutes = QComboBox()
        for tier in tiers:
            self._default_minutes.addItem(f"{tier.minutes} min", tier.minutes)
        idx = self._default_minutes.findData(self.chosen_default_minutes)
        if idx >= 0:
            self._default_minutes.setCurrentIndex(idx)
        self._add_row(lay, "Default Duration:", self._default_minutes,
                      "Duration preselected on stations that haven't picked one yet.")

        # Snapshot interval
        self._snapshot_interval = QSpinBox()
        self._snapshot_interval.setRange(1, 60)
        self._snapshot_interval.setValue(self.chosen_snapshot_min_minutes)
        self._snapshot_interval.setSuffix(" min")
        self._add_row(lay, "Snapshot Interval:", self._snapshot_interval,
                      "Will try to keep a fresh snapshot/backup of the board every N minutes.")

        # Confirmations
        self._confirm_stop = self._yes_no(self.chosen_confirm_stop)
        self._add_row(lay, "Confirm Stop:", self._confirm_stop,
                      "Whether to ask before stopping a ride early.")
        self._confirm_transfer = self._yes_no(self.chosen_confirm_transfer)
        self._add_row(lay, "Confirm Transfer:", self._confirm_transfer,
                      "Whether to ask before moving a ride to another kart.")

        # Pending rides on karts that left the station list. They have no row, so they're confirmed from here.
        self._on_confirm_orphan = on_confirm_orphan
        if orphan_pending:
            lbl = QLabel("Pending rides on removed karts:")
            lbl.setFont(QFont("Calibri", 12, QFont.Bold))
            lay.addWidget(lbl)
            self._orphan_list = QListWidget()
            for text, station_id, index in orphan_pending:
                item = QListWidgetItem(text)
                item.setData(Qt.UserRole, (station_id, index))
                self._orphan_list.addItem(item)
            self._orphan_list.setMaximumHeight(120)
            lay.addWidget(self._orphan_list)
            confirm_row = QHBoxLayout()
            confirm_btn = QPushButton("Confirm Selected")
            confirm_btn.setFont(QFont("Calibri", 11))
            confirm_btn.setToolTip("Settle the selected ride so it counts towards the total.")
            confirm_btn.clicked.connect(self._confirm_selected_orphan)
            confirm_row.addStretch()
            confirm_row.addWidget(confirm_btn)
            lay.addLayout(confirm_row)
        else:
            self._orphan_list = None

        sep = QFrame()
        sep.setFrameShape(QFrame.HLine)
        sep.setFrameShadow(QFrame.Sunken)
        lay.addWidget(sep)

        # Action buttons
        btn_row = QHBoxLayout()
        prune_btn = QPushButton("Forget Removed Karts")
        prune_btn.setToolTip("Drop saved timers of karts that are no longer in the station list.")
        prune_btn.clicked.connect(lambda _=False: self._prune(on_prune_orphans))
        folder_btn = QPushButton("Open Snapshot Folder")
        folder_btn.clicked.connect(
            lambda: QDesktopServices.openUrl(QUrl.fromLocalFile(str(PATHS.snapshots)))
        )
        apply_btn = QPushButton("Apply")
        apply_btn.clicked.connect(self._apply)
        for btn in (prune_btn, folder_btn, apply_btn):
            btn.setFont(QFont("Calibri", 11))
        btn_row.addWidget(prune_btn)
        btn_row.addWidget(folder_btn)
        btn_row.addStretch()
        btn_row.addWidget(apply_btn)
        lay.addLayout(btn_row)

    @staticmethod
    def _yes_no(value):
        combo = QComboBox()
        combo.addItems(["Yes", "No"])
        combo.setCurrentText("Yes" if value else "No")
        return combo

    @staticmethod
    def _add_row(lay, text, widget, tooltip):
        row = QHBoxLayout()
        lbl = QLabel(text)
        lbl.setFont(QFont("Calibri", 12, QFont.Bold))
        lbl.setToolTip(tooltip)
        widget.setToolTip(tooltip)
        widget.setMinimumWidth(200)
        row.addWidget(lbl)
        row.addWidget(widget)
        lay.addLayout(row)

    def _prune(self, on_prune_orphans):
        on_prune_orphans()
        if self._orphan_list is not None:
            self._orphan_list.clear()

    def _confirm_selected_orphan(self):
        item = self._orphan_list.currentItem()
        if item is None or self._on_confirm_orphan is None:
            return
        station_id, index = item.data(Qt.UserRole)
        if self._on_confirm_orphan(station_id, index):
            self._orphan_list.takeItem(self._orphan_list.row(item))

    def _apply(self):
        self.chosen_api_base = self._api_base.text().strip()
        if self._default_minutes.currentData() is not None:
            self.chosen_default_minutes = self._default_minutes.currentData()
        self.chosen_snapshot_min_minutes = self._snapshot_interval.value()
        self.chosen_confirm_stop = self._confirm_stop.currentText() == "Yes"
        self.chosen_confirm_transfer = self._confirm_transfer.currentText() == "Yes"
        self.changed = True
        self.accept()
