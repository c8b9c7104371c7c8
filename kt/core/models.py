"""Plain data types shared by the engine, the store, the API client and the UI."""

from dataclasses import dataclass, asdict
from enum import Enum


class StationStatus(Enum):
    """Derived state of one station's timer."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Station:
    id: str
    name: str
    number: int | None = None
    image: str | None = None
    price: float | None = None

    @property
    def label(self):
        if self.number is None:
            return self.name
        return f"{self.name} #{self.number}"

    @staticmethod
    def from_dict(data):
        # The rental service is Mongo-backed, so ids arrive as `_id`; cached copies use `id`.
        station_id = data.get("_id") or data.get("id")
        if not station_id:
            raise ValueError(f"Station without an id: {data!r}")
        number = data.get("number")
        price = data.get("price")
        return Station(
            id=str(station_id),
            name=data.get("name") or "Kart",
            number=int(number) if number is not None else None,
            image=data.get("image") or None,
            price=float(price) if price is not None else None,
        )

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class RateTier:
    minutes: int
    amount: float

    @staticmethod
    def from_dict(data):
        return RateTier(minutes=int(data["minutes"]), amount=float(data.get("amount") or 0))

    def to_dict(self):
        return {"minutes": self.minutes, "amount": self.amount}


# Used whenever the rate list can't be fetched and nothing is cached, so the board stays operable.
FALLBACK_TIERS = (
    RateTier(15, 0),
    RateTier(30, 0),
    RateTier(45, 0),
    RateTier(60, 0),
)
DEFAULT_MINUTES = 30


@dataclass(frozen=True)
class User:
    username: str
    role: str = "employee"


@dataclass(frozen=True)
class StationView:
    """Snapshot of what a station row displays right now."""

    status: StationStatus
    elapsed: int
    remaining: int
    percent: int
    amount: float
    selected_minutes: int | None
    pending: int = 0
