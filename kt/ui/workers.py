"""Background calls to the rental service.

Every RentalApi call made by the board runs on a QThreadPool worker so a slow
or unreachable server never stalls the timers. Results come back as queued
signals and are handled on the GUI thread, which is the only thread that
touches the StationStore.
"""

import itertools
from PySide6.QtCore import QObject, QRunnable, QThreadPool, Qt, Signal, Slot
from kt.common.logger import log
from kt.core.errors import ApiError
from kt.core.outbox import send_batch


class _CallSignals(QObject):
    finished = Signal(int, object)
    failed = Signal(int, str)


class ApiCall(QRunnable):
    """One blocking call, run on a pool thread."""

    def __init__(self, task_id, fn, args):
        super().__init__()
        self.task_id = task_id
        self._fn = fn
        self._args = args
        self.signals = _CallSignals()

    def run(self):
        try:
            result = self._fn(*self._args)
        except ApiError as exc:
            self.signals.failed.emit(self.task_id, str(exc))
            return
        except Exception as exc:
            log.exception(f"Background call {getattr(self._fn, '__name__', self._fn)} crashed")
            self.signals.failed.emit(self.task_id, f"Unexpected error: {exc}")
            return
        self.signals.finished.emit(self.task_id, result)


# Owns the in-flight ApiCalls and routes each result to its callback on the GUI thread.
class TaskRunner(QObject):

    def __init__(self, pool=None, parent=None):
        super().__init__(parent)
        self.pool = pool or QThreadPool.globalInstance()
        self._ids = itertools.count(1)
        self._tasks = {}  # task id -> (ApiCall, on_done, on_error)

    def submit(self, fn, *args, on_done=None, on_error=None):
        task_id = next(self._ids)
        task = ApiCall(task_id, fn, args)
        task.setAutoDelete(False)
        task.signals.finished.connect(self._on_finished, Qt.QueuedConnection)
        task.signals.failed.connect(self._on_failed, Qt.QueuedConnection)
        self._tasks[task_id] = (task, on_done, on_error)
        self.pool.start(task)
        return task_id

    def pending(self):
        return len(self._tasks)

    @Slot(int, object)
    def _on_finished(self, task_id, result):
        _, on_done, _ = self._tasks.pop(task_id, (None, None, None))
        if on_done is not None:
            on_done(result)

    @Slot(int, str)
    def _on_failed(self, task_id, message):
        _, _, on_error = self._tasks.pop(task_id, (None, None, None))
        if on_error is not None:
            on_error(message)
        else:
            log.warning(f"Background call failed: {message}")


# Ships the store's queued session logs through a TaskRunner, one batch at a time. The batch is a copy; the acked
# clientIds are removed from the live outbox (and state.json) once the batch comes back.
class OutboxSender:

    def __init__(self, store, runner, on_sent=None):
        self.store = store
        self.runner = runner
        self.on_sent = on_sent
        self._in_flight = False

    @property
    def in_flight(self):
        return self._in_flight

    # Returns True if a batch was handed to the pool, False if there was nothing to send or a batch is still out.
    def flush(self, api):
        if self._in_flight or len(self.store.outbox) == 0:
            return False
        self._in_flight = True
        self.runner.submit(send_batch, api, self.store.outbox.pending(),
                           on_done=self._on_batch_done, on_error=self._on_batch_failed)
        return True

    def _on_batch_done(self, acked):
        self._in_flight = False
        removed = self.store.outbox.acknowledge(acked)
        if removed:
            self.store.flush()
        if self.on_sent is not None:
            self.on_sent(removed)

    def _on_batch_failed(self, message):
        self._in_flight = False
        log.warning(f"Session log batch failed, keeping {len(self.store.outbox)} queued: {message}")


# Stations and rates in one background call. A part that fails comes back as None so the store keeps its cache.
def fetch_catalog(api):
    catalog = {"tiers": None, "stations": None, "errors": []}
    try:
        catalog["tiers"] = api.list_rate_tiers()
    except ApiError as exc:
        catalog["errors"].append(f"rates: {exc}")
    try:
        catalog["stations"] = api.list_stations()
    except ApiError as exc:
        catalog["errors"].append(f"stations: {exc}")
    return catalog
