"""Session ledger: the per-station list of rental sessions and the business total.

Everything here is a plain function over `TimerState` objects. The engine
drives the transitions; these helpers keep the ledger invariants in one place:

* only the current, unsettled session is ever replaced
* settled sessions are never touched again
* the running total only counts settled amounts
"""

from kt.common.logger import log
from kt.core.errors import InvalidStateError
from kt.core.timer_state import ActiveSession, ClosedSession, TimerState


def aggregate_total(states):
    """Sum of settled session amounts across every station in `states`.

    `states` may be a mapping of station id to `TimerState` or any
    iterable of `TimerState`.
    """
    if hasattr(states, "values"):
        states = states.values()
    return sum(
        (session.amount or 0)
        for state in states
        for session in state.sessions
        if session.settled
    )


def append_session(state, session):
    """Append a new in-progress session and make it the current one."""
    if state.current is not None:
        raise InvalidStateError("Station already has a session in progress.")
    state.sessions.append(session)
    state.current_session = len(state.sessions) - 1
    return state.current_session


def close_session(state, index, end, accumulated, amount, settled):
    """Replace the active session at `index` with its closed form."""
    session = state.sessions[index]
    if not isinstance(session, ActiveSession):
        raise InvalidStateError(f"Session {index} is already closed.")
    closed = ClosedSession(
        start=session.start,
        end=end,
        minutes=session.minutes,
        accumulated=accumulated,
        amount=amount,
        settled=settled,
        id=session.id,
    )
    state.sessions[index] = closed
    return closed


def settle(state, index):
    """Mark a closed session as settled so it counts towards the total."""
    session = state.sessions[index]
    if not isinstance(session, ClosedSession):
        raise InvalidStateError(f"Session {index} is still in progress and can't be settled.")
    if session.settled:
        raise InvalidStateError(f"Session {index} is already settled.")
    settled = ClosedSession(
        start=session.start,
        end=session.end,
        minutes=session.minutes,
        accumulated=session.accumulated,
        amount=session.amount,
        settled=True,
        id=session.id,
    )
    state.sessions[index] = settled
    return settled


def pending_sessions(state):
    """(index, session) pairs of closed sessions still waiting on the operator."""
    return [
        (i, s) for i, s in enumerate(state.sessions)
        if isinstance(s, ClosedSession) and not s.settled
    ]


def move_sessions(source, dest):
    """Move every session and the live timing from `source` onto `dest`.

    Source sessions are appended after the destination's own, in order. The
    destination must not have a current session of its own; the caller deals
    with that beforehand. `source` ends up idle with an empty ledger.
    """
    if dest.current is not None:
        raise InvalidStateError("Destination still has a current session.")
    offset = len(dest.sessions)
    dest.sessions.extend(source.sessions)
    dest.current_session = None if source.current_session is None else source.current_session + offset
    dest.running = source.running
    dest.started_at = source.started_at
    dest.accumulated = source.accumulated
    dest.total = source.total
    dest.planned_amount = source.planned_amount
    dest.selected_minutes = source.selected_minutes

    source.sessions = []
    source.clear_timing()


def export_state(state):
    """Storage-safe dict for a station's TimerState."""
    return state.to_dict()


def import_state(data, now_ms):
    """Rebuild a TimerState from `export_state` output.

    Clock anomalies are clamped here: a `startedAt` in the future becomes
    `now_ms` so elapsed time never goes negative. A running flag without a
    session to time is dropped. Raises ValueError for malformed data.
    """
    state = TimerState.from_dict(data)
    if state.running and state.started_at is not None and state.started_at > now_ms:
        log.warning(f"Persisted startedAt {state.started_at} is ahead of now ({now_ms}), clamping.")
        state.started_at = now_ms
    if state.running and not isinstance(state.current, ActiveSession):
        log.warning("Persisted state was running without an active session, treating it as paused.")
        state.running = False
        state.started_at = None
    if state.total > 0 and state.accumulated > state.total:
        state.accumulated = state.total
    return state
