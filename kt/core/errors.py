"""Exception hierarchy for the station timers.

Every error here is recoverable: the UI shows the message and the station
stays in its last good state.
"""


class KartTimerError(Exception):
    """Base class for all KartTimer errors."""


class InvalidStateError(KartTimerError):
    """Raised when an operation isn't valid from a station's current state."""


class ValidationError(KartTimerError):
    """Raised when operator input (duration tier, amount...) is rejected."""


class DurationLockedError(ValidationError):
    """Raised when the duration tier is changed while a session exists."""


class UnknownStationError(KartTimerError):
    """Raised when a station id isn't part of the current station list."""


class TransferError(KartTimerError):
    """Raised when a transfer is rejected before anything is moved."""


class TransferConflictError(TransferError):
    """Raised when the destination already has activity and overwrite wasn't confirmed."""

    def __init__(self, source_id, dest_id):
        super().__init__(f"Station '{dest_id}' already has an active session; confirm to overwrite it.")
        self.source_id = source_id
        self.dest_id = dest_id


class ApiError(KartTimerError):
    """Raised when the rental service can't be reached or answers with an error."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code
