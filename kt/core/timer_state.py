import uuid
from dataclasses import dataclass, field
from kt.core.models import StationStatus


# Sessions come in two shapes. An ActiveSession is still being timed; a ClosedSession has an end and a fixed
# amount, and is only counted towards the running total once `settled` is True.
@dataclass
class ActiveSession:
    start: int
    minutes: int
    accumulated: int = 0
    amount: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def settled(self):
        return False

    def to_dict(self):
        return {
            "id": self.id,
            "start": self.start,
            "end": None,
            "minutes": self.minutes,
            "accumulated": self.accumulated,
            "amount": self.amount,
            "settled": False,
        }


@dataclass(frozen=True)
class ClosedSession:
    start: int
    end: int
    minutes: int
    accumulated: int
    amount: float
    settled: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    # Seconds actually spent on the ride. Can be less than minutes * 60 when stopped early.
    @property
    def duration(self):
        return self.accumulated

    def to_dict(self):
        return {
            "id": self.id,
            "start": self.start,
            "end": self.end,
            "minutes": self.minutes,
            "accumulated": self.accumulated,
            "amount": self.amount,
            "settled": self.settled,
        }


def _require_int(data, key, allow_none=False):
    value = data.get(key)
    if value is None and allow_none:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number, got {value!r}")
    return int(value)

def _optional_amount(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"amount must be a number, got {value!r}")
    return float(value)

# Rebuilds the right session variant from its persisted dict.
def session_from_dict(data):
    if not isinstance(data, dict):
        raise ValueError(f"Session entry must be an object, got {type(data).__name__}")
    start = _require_int(data, "start")
    end = _require_int(data, "end", allow_none=True)
    minutes = _require_int(data, "minutes")
    accumulated = max(0, _require_int(data, "accumulated") if data.get("accumulated") is not None else 0)
    amount = _optional_amount(data.get("amount"))
    session_id = str(data.get("id") or uuid.uuid4().hex)
    if end is None:
        return ActiveSession(start=start, minutes=minutes, accumulated=accumulated, amount=amount, id=session_id)
    return ClosedSession(
        start=start,
        end=end,
        minutes=minutes,
        accumulated=accumulated,
        amount=amount or 0.0,
        settled=bool(data.get("settled", False)),
        id=session_id,
    )


# This object holds the full timing and billing state of a single station. It's plain data; every transition lives
# in TimerEngine and the ledger helpers.
@dataclass
class TimerState:
    running: bool = False
    started_at: int | None = None
    accumulated: int = 0
    total: int = 0
    selected_minutes: int | None = None
    planned_amount: float = 0.0
    sessions: list = field(default_factory=list)
    current_session: int | None = None

    @property
    def current(self):
        if self.current_session is None:
            return None
        if not 0 <= self.current_session < len(self.sessions):
            return None
        return self.sessions[self.current_session]

    @property
    def status(self):
        current = self.current
        if current is None:
            return StationStatus.IDLE
        if isinstance(current, ClosedSession):
            return StationStatus.COMPLETED
        return StationStatus.RUNNING if self.running else StationStatus.PAUSED

    # True when a transfer into this station would clobber something.
    @property
    def has_activity(self):
        return self.current is not None or self.running or self.accumulated > 0

    # Whole seconds of the running segment, never negative.
    def segment_seconds(self, now_ms):
        if not self.running or self.started_at is None:
            return 0
        return max(0, (now_ms - self.started_at) // 1000)

    def elapsed(self, now_ms):
        return max(0, self.accumulated + self.segment_seconds(now_ms))

    # Resets the live counters to the idle template, keeping selected_minutes/planned_amount for the next session.
    def clear_timing(self):
        self.running = False
        self.started_at = None
        self.accumulated = 0
        self.total = 0
        self.current_session = None

    def to_dict(self):
        return {
            "running": self.running,
            "startedAt": self.started_at,
            "accumulated": self.accumulated,
            "total": self.total,
            "plannedAmount": self.planned_amount,
            "selectedMinutes": self.selected_minutes,
            "sessions": [s.to_dict() for s in self.sessions],
            "currentSession": self.current_session,
        }

    # Builds a TimerState from its persisted shape. Raises ValueError on anything malformed, leaving the decision of
    # what to fall back to with the caller.
    @staticmethod
    def from_dict(data):
        if not isinstance(data, dict):
            raise ValueError(f"Timer state must be an object, got {type(data).__name__}")
        raw_sessions = data.get("sessions") or []
        if not isinstance(raw_sessions, list):
            raise ValueError("'sessions' must be a list")
        sessions = [session_from_dict(s) for s in raw_sessions]

        current = data.get("currentSession")
        if current is not None:
            current = _require_int(data, "currentSession")
            if not 0 <= current < len(sessions):
                raise ValueError(f"currentSession {current} is out of range for {len(sessions)} sessions")
            if getattr(sessions[current], "settled", False):
                raise ValueError(f"currentSession {current} points at a settled session")

        started_at = _require_int(data, "startedAt", allow_none=True)
        running = bool(data.get("running", False)) and started_at is not None
        return TimerState(
            running=running,
            started_at=started_at if running else None,
            accumulated=max(0, _require_int(data, "accumulated") if data.get("accumulated") is not None else 0),
            total=max(0, _require_int(data, "total") if data.get("total") is not None else 0),
            selected_minutes=_require_int(data, "selectedMinutes", allow_none=True),
            planned_amount=_optional_amount(data.get("plannedAmount")) or 0.0,
            sessions=sessions,
            current_session=current,
        )
