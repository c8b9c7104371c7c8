from kt.common.logger import log

TICK_INTERVAL_MS = 1000

# Registry of cancelable periodic callbacks keyed by station id. The engine only ever talks to this interface, so the
# ticks can be backed by QTimer in the app (kt.ui.scheduler.QtScheduler) or by virtual time in tests.
class Scheduler:

    # Register `callback()` to run every `interval_ms`. Re-registering a key replaces the previous callback.
    def register(self, key, interval_ms, callback):
        raise NotImplementedError

    # Cancel the callback for `key`. Cancelling an unknown key is fine.
    def cancel(self, key):
        raise NotImplementedError

    def is_registered(self, key):
        raise NotImplementedError


# Cooperative scheduler over a ManualClock. Nothing fires until advance() is called, at which point every due
# callback fires in time order with the clock set to its due time.
class ManualScheduler(Scheduler):

    def __init__(self, clock):
        self.clock = clock
        self._jobs = {}  # key -> [next_due_ms, interval_ms, callback]

    def register(self, key, interval_ms, callback):
        self._jobs[key] = [self.clock.now_ms() + interval_ms, interval_ms, callback]
        log.debug(f"Registered tick for '{key}' every {interval_ms}ms")

    def cancel(self, key):
        if self._jobs.pop(key, None) is not None:
            log.debug(f"Cancelled tick for '{key}'")

    def is_registered(self, key):
        return key in self._jobs

    # Advances the clock by `seconds`, firing callbacks as their due times pass. Returns how many callbacks fired.
    def advance(self, seconds):
        target = self.clock.now_ms() + int(round(seconds * 1000))
        fired = 0
        while True:
            due = [(job[0], key) for key, job in self._jobs.items() if job[0] <= target]
            if not due:
                break
            due_ms, key = min(due)
            job = self._jobs[key]
            self.clock.set(due_ms)
            job[0] = due_ms + job[1]
            job[2]()
            fired += 1
        self.clock.set(target)
        return fired
