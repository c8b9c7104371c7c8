from PySide6.QtCore import Qt
from PySide6.QtGui import QFont
from PySide6.QtWidgets import (
    QDialog,
    QFormLayout,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QPushButton,
    QVBoxLayout,
)
from kt.common.logger import log

# Employee login. The rental service checks the credentials; we only keep the username and role for attributing the
# ride logs and showing who's on shift.
class LoginDialog(QDialog):

    def __init__(self, parent, api, runner, username=""):
        super().__init__(parent)
        self.setWindowTitle("Log In")
        self.setWindowFlags(self.windowFlags() | Qt.WindowStaysOnTopHint)
        self.setModal(True)
        self._api = api
        self._runner = runner
        self._busy = False
        self.user = None

        outer = QVBoxLayout(self)
        form = QFormLayout()
        self._username = QLineEdit(username or "")
        self._password = QLineEdit()
        self._password.setEchoMode(QLineEdit.Password)
        self._password.returnPressed.connect(self._submit)
        form.addRow("Username:", self._username)
        form.addRow("Password:", self._password)
        outer.addLayout(form)

        self._error = QLabel("")
        self._error.setStyleSheet("color: #C93400;")
        outer.addWidget(self._error)

        btn_row = QHBoxLayout()
        btn_row.addStretch()
        cancel_btn = QPushButton("Cancel")
        cancel_btn.clicked.connect(self.reject)
        login_btn = QPushButton("Log In")
        self._login_btn = login_btn
        login_btn.setDefault(True)
        login_btn.clicked.connect(self._submit)
        for btn in (cancel_btn, login_btn):
            btn.setFont(QFont("Calibri", 11))
            btn_row.addWidget(btn)
        outer.addLayout(btn_row)

    # The credential check runs on the pool; the dialog stays responsive and ignores repeat clicks while it's out.
    def _submit(self):
        if self._busy:
            return
        username = self._username.text().strip()
        password = self._password.text()
        if not username or not password:
            self._error.setText("Enter a username and password.")
            return
        self._busy = True
        self._login_btn.setEnabled(False)
        self._error.setText("Checking...")
        self._runner.submit(self._api.login, username, password,
                            on_done=self._on_logged_in,
                            on_error=lambda message: self._on_failed(username, message))

    def _on_logged_in(self, user):
        self._busy = False
        self.user = user
        self.accept()

    def _on_failed(self, username, message):
        self._busy = False
        self._login_btn.setEnabled(True)
        log.warning(f"Login failed for '{username}': {message}")
        self._error.setText("Invalid username or password, or the server is unreachable.")
