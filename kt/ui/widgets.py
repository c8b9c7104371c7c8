"""Row widget builders for the station board.

Each builder returns a (container, widget_dict) tuple.  The container is a
QWidget with objectName "rowBg" that can be inserted into the grid; the
widget_dict maps logical names to sub-widgets for later updates.
"""

from PySide6.QtCore import Qt
from PySide6.QtGui import QFont, QPixmap
from PySide6.QtWidgets import (
    QComboBox,
    QHBoxLayout,
    QLabel,
    QProgressBar,
    QPushButton,
    QSizePolicy,
    QVBoxLayout,
    QWidget,
)

from kt.core.models import StationStatus
from kt.util import format_amount, format_time

FONT_FAMILY = "Calibri"
THUMB_SIZE = 48

STYLESHEET = """
QWidget { background-color: #F5F5F7; color: #1D1D1F; }
#rowBg { border-bottom: 1px solid #D2D2D7; }
QPushButton { background-color: #FFFFFF; border: 1px solid #C7C7CC; border-radius: 4px; padding: 4px 10px; }
QPushButton:hover { background-color: #E8E8ED; }
QPushButton:disabled { color: #A1A1A6; }
QProgressBar { border: 1px solid #C7C7CC; border-radius: 4px; background: #FFFFFF; height: 10px; }
QProgressBar::chunk { background-color: #34C759; border-radius: 4px; }
"""

# Row background per status. Completed rows flash red-ish so the alarm has a visible source.
STATUS_BG = {
    StationStatus.IDLE: "#F5F5F7",
    StationStatus.RUNNING: "#E9F7EE",
    StationStatus.PAUSED: "#FFF6E0",
    StationStatus.COMPLETED: "#FDE2E1",
}

_TOGGLE_TEXT = {
    StationStatus.IDLE: "Start",
    StationStatus.RUNNING: "Pause",
    StationStatus.PAUSED: "Resume",
    StationStatus.COMPLETED: "Start",
}


def build_station_row(station, tiers, view, currency, on_toggle, on_stop, on_finalize,
                      on_another_round, on_duration):
    """Build one station row.

    Returns (container, widget_dict).
    """
    rc = QWidget()
    rc.setObjectName("rowBg")
    rc_lay = QHBoxLayout(rc)
    rc_lay.setContentsMargins(6, 4, 6, 4)
    rc_lay.setSpacing(8)

    # Col 0: thumbnail, filled in once the image is loaded
    thumb_lbl = QLabel("Kart")
    thumb_lbl.setFixedSize(THUMB_SIZE, THUMB_SIZE)
    thumb_lbl.setAlignment(Qt.AlignCenter)
    thumb_lbl.setFont(QFont(FONT_FAMILY, 8))
    thumb_lbl.setStyleSheet("background-color: #E5E5EA; color: #8E8E93; border-radius: 6px;")
    rc_lay.addWidget(thumb_lbl)

    # Col 1: name + pending badge
    name_col = QVBoxLayout()
    name_lbl = QLabel(station.label)
    name_lbl.setFont(QFont(FONT_FAMILY, 13, QFont.Bold))
    name_lbl.setMinimumWidth(140)
    pending_lbl = QLabel("")
    pending_lbl.setFont(QFont(FONT_FAMILY, 9))
    pending_lbl.setStyleSheet("color: #C93400;")
    name_col.addWidget(name_lbl)
    name_col.addWidget(pending_lbl)
    rc_lay.addLayout(name_col)

    # Col 2: elapsed / remaining over the progress bar
    time_col = QVBoxLayout()
    times = QHBoxLayout()
    elapsed_lbl = QLabel(format_time(view.elapsed))
    elapsed_lbl.setFont(QFont(FONT_FAMILY, 14))
    remaining_lbl = QLabel(format_time(view.remaining))
    remaining_lbl.setFont(QFont(FONT_FAMILY, 14))
    remaining_lbl.setStyleSheet("color: #6E6E73;")
    times.addWidget(elapsed_lbl)
    times.addStretch()
    times.addWidget(remaining_lbl)
    bar = QProgressBar()
    bar.setRange(0, 100)
    bar.setTextVisible(False)
    bar.setValue(view.percent)
    time_col.addLayout(times)
    time_col.addWidget(bar)
    rc_lay.addLayout(time_col, 1)

    # Col 3: duration tier + amount
    duration = QComboBox()
    duration.setFont(QFont(FONT_FAMILY, 11))
    for tier in tiers:
        duration.addItem(f"{tier.minutes} min", tier.minutes)
    if view.selected_minutes is not None:
        idx = duration.findData(view.selected_minutes)
        if idx >= 0:
            duration.setCurrentIndex(idx)
    duration.activated.connect(lambda i, c=duration: on_duration(station.id, c.itemData(i)))
    rc_lay.addWidget(duration)

    amount_lbl = QLabel(format_amount(view.amount, currency))
    amount_lbl.setFont(QFont(FONT_FAMILY, 12))
    amount_lbl.setMinimumWidth(70)
    amount_lbl.setAlignment(Qt.AlignRight | Qt.AlignVCenter)
    rc_lay.addWidget(amount_lbl)

    # Col 4: actions
    toggle_btn = QPushButton(_TOGGLE_TEXT[view.status])
    toggle_btn.setSizePolicy(QSizePolicy.Fixed, QSizePolicy.Fixed)
    toggle_btn.clicked.connect(lambda _=False: on_toggle(station.id))
    stop_btn = QPushButton("Stop")
    stop_btn.setToolTip("End the ride now. The full tier price is charged.")
    stop_btn.clicked.connect(lambda _=False: on_stop(station.id))
    finish_btn = QPushButton("Finalize")
    finish_btn.setToolTip("Confirm payment for the completed ride.")
    finish_btn.clicked.connect(lambda _=False: on_finalize(station.id))
    round_btn = QPushButton("Another round")
    round_btn.setToolTip("Free the kart for a new ride. The finished ride stays pending until confirmed.")
    round_btn.clicked.connect(lambda _=False: on_another_round(station.id))
    for btn in (toggle_btn, stop_btn, finish_btn, round_btn):
        btn.setFont(QFont(FONT_FAMILY, 11))
        rc_lay.addWidget(btn)

    widget_dict = {
        "container": rc,
        "thumb": thumb_lbl,
        "name": name_lbl,
        "pending": pending_lbl,
        "elapsed": elapsed_lbl,
        "remaining": remaining_lbl,
        "bar": bar,
        "duration": duration,
        "amount": amount_lbl,
        "toggle": toggle_btn,
        "stop": stop_btn,
        "finish": finish_btn,
        "round": round_btn,
    }
    apply_view(widget_dict, view, currency)
    return rc, widget_dict


def apply_view(w, view, currency):
    """Push a StationView into an existing row's widgets."""
    status = view.status
    w["elapsed"].setText(format_time(view.elapsed))
    w["remaining"].setText(format_time(view.remaining))
    w["bar"].setValue(view.percent)
    w["amount"].setText(format_amount(view.amount, currency))
    w["pending"].setText(f"{view.pending} pending" if view.pending else "")

    w["toggle"].setText(_TOGGLE_TEXT[status])
    w["toggle"].setEnabled(status is not StationStatus.COMPLETED)
    w["stop"].setEnabled(status in (StationStatus.RUNNING, StationStatus.PAUSED))
    w["finish"].setVisible(status is StationStatus.COMPLETED)
    w["round"].setVisible(status is StationStatus.COMPLETED)
    w["duration"].setEnabled(status is StationStatus.IDLE)
    if view.selected_minutes is not None and status is StationStatus.IDLE:
        idx = w["duration"].findData(view.selected_minutes)
        if idx >= 0 and idx != w["duration"].currentIndex():
            w["duration"].setCurrentIndex(idx)

    bold = status is StationStatus.RUNNING
    for key in ("name", "elapsed"):
        f = w[key].font()
        f.setBold(bold or key == "name")
        w[key].setFont(f)
    w["container"].setStyleSheet(f"#rowBg {{ background-color: {STATUS_BG[status]}; }}")


def set_thumbnail(w, data):
    """Show image bytes in a row's thumbnail. Returns False if Qt can't decode them."""
    pixmap = QPixmap()
    if not data or not pixmap.loadFromData(data):
        return False
    w["thumb"].setText("")
    w["thumb"].setPixmap(pixmap.scaled(THUMB_SIZE, THUMB_SIZE, Qt.KeepAspectRatioByExpanding, Qt.SmoothTransformation))
    return True


def build_footer(total_text, user_text, logged_in, on_refresh, on_close_shift, on_login, on_config):
    """Build the footer bar with the running total and board controls.

    Returns (container, footer_widgets).
    """
    footer_font = QFont(FONT_FAMILY, 12)

    total_lbl = QLabel(total_text)
    total_lbl.setFont(QFont(FONT_FAMILY, 16, QFont.Bold))
    user_lbl = QLabel(user_text)
    user_lbl.setFont(footer_font)
    user_lbl.setStyleSheet("color: #6E6E73;")

    refresh_btn = QPushButton("Refresh")
    refresh_btn.setToolTip("Reload stations and rates from the server")
    refresh_btn.clicked.connect(on_refresh)
    close_btn = QPushButton("Close Shift")
    close_btn.setToolTip("Archive settled rides and clear them from the board")
    close_btn.clicked.connect(on_close_shift)
    login_btn = QPushButton()
    set_login_state(login_btn, logged_in)
    login_btn.clicked.connect(on_login)
    cfg_btn = QPushButton("⚙")
    cfg_btn.setToolTip("Settings")
    cfg_btn.clicked.connect(on_config)
    for btn in (refresh_btn, close_btn, login_btn, cfg_btn):
        btn.setFont(footer_font)

    footer = QWidget()
    footer.setObjectName("footer")
    f_lay = QHBoxLayout(footer)
    f_lay.setContentsMargins(0, 0, 0, 0)
    f_lay.setSpacing(8)
    f_lay.addWidget(total_lbl)
    f_lay.addStretch()
    f_lay.addWidget(user_lbl)
    f_lay.addWidget(refresh_btn)
    f_lay.addWidget(close_btn)
    f_lay.addWidget(login_btn)
    f_lay.addWidget(cfg_btn)

    footer_widgets = {
        "total": total_lbl,
        "user": user_lbl,
        "refresh_btn": refresh_btn,
        "close_btn": close_btn,
        "login_btn": login_btn,
        "cfg_btn": cfg_btn,
    }
    return footer, footer_widgets


# The footer's account button logs in when nobody is on shift and logs out otherwise.
def set_login_state(login_btn, logged_in):
    login_btn.setText("Log Out" if logged_in else "Log In")
    login_btn.setToolTip("Stop logging rides under this employee" if logged_in else "Log in to attribute rides")
