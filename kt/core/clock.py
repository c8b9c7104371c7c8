import time

# Wall-clock source in epoch milliseconds. Timer state is persisted across restarts, so the engine works off wall
# time rather than time.monotonic(); clock anomalies are clamped where the values are consumed.
class SystemClock:
    def now_ms(self) -> int:
        return int(time.time() * 1000)

# A clock that only moves when told to. Used by ManualScheduler and by tests to simulate hours in microseconds.
class ManualClock:

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now = int(start_ms)

    def now_ms(self) -> int:
        return self._now

    def set(self, ms):
        self._now = int(ms)

    def advance(self, seconds):
        self._now += int(round(seconds * 1000))
        return self._now
