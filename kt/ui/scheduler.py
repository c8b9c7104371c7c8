from PySide6.QtCore import QObject, QTimer
from kt.core.scheduler import Scheduler

# Scheduler backed by one QTimer per station, all parented to the main window so they die with it. Callbacks run on
# the Qt event loop, so ticks for one station never overlap.
class QtScheduler(Scheduler):

    def __init__(self, parent: QObject):
        self._parent = parent
        self._timers = {}

    def register(self, key, interval_ms, callback):
        self.cancel(key)
        timer = QTimer(self._parent)
        timer.setInterval(interval_ms)
        timer.timeout.connect(callback)
        timer.start()
        self._timers[key] = timer

    def cancel(self, key):
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.stop()
            timer.deleteLater()

    def is_registered(self, key):
        return key in self._timers
