"""
Ledger events and the in-process bus that delivers them.

Events are published only after the operation that produced them has
committed. Subscribers must tolerate redelivery: ``GamePlayed.event_key`` is
the stable idempotency key.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Dict, List, Union

from shardflip.core.logger import get_logger
from shardflip.core.models import CoinSide, GameRecord

logger = get_logger("events")


class EventKind(str, Enum):
    GAME_PLAYED = "game_played"
    FUNDS_DEPOSITED = "funds_deposited"
    FUNDS_WITHDRAWN = "funds_withdrawn"
    EMERGENCY_WITHDRAW = "emergency_withdraw"
    PAUSED = "paused"
    UNPAUSED = "unpaused"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"


@dataclass(frozen=True)
class GamePlayed:
    player: str
    bet_amount: int
    chosen_side: CoinSide
    result_side: CoinSide
    won: bool
    payout: int
    timestamp: int
    index: int
    kind: EventKind = field(default=EventKind.GAME_PLAYED, init=False)

    @property
    def event_key(self) -> str:
        return f"{self.player}:{self.timestamp}:{self.index}"

    @classmethod
    def from_record(cls, game: GameRecord) -> "GamePlayed":
        return cls(
            player=game.player,
            bet_amount=game.bet_amount,
            chosen_side=game.chosen_side,
            result_side=game.result_side,
            won=game.won,
            payout=game.payout,
            timestamp=game.timestamp,
            index=game.index,
        )


@dataclass(frozen=True)
class FundsDeposited:
    sender: str
    amount: int
    kind: EventKind = field(default=EventKind.FUNDS_DEPOSITED, init=False)


@dataclass(frozen=True)
class FundsWithdrawn:
    owner: str
    amount: int
    kind: EventKind = field(default=EventKind.FUNDS_WITHDRAWN, init=False)


@dataclass(frozen=True)
class EmergencyWithdraw:
    owner: str
    amount: int
    kind: EventKind = field(default=EventKind.EMERGENCY_WITHDRAW, init=False)


@dataclass(frozen=True)
class Paused:
    account: str
    kind: EventKind = field(default=EventKind.PAUSED, init=False)


@dataclass(frozen=True)
class Unpaused:
    account: str
    kind: EventKind = field(default=EventKind.UNPAUSED, init=False)


@dataclass(frozen=True)
class OwnershipTransferred:
    previous_owner: str
    new_owner: str
    kind: EventKind = field(default=EventKind.OWNERSHIP_TRANSFERRED, init=False)


LedgerEvent = Union[
    GamePlayed,
    FundsDeposited,
    FundsWithdrawn,
    EmergencyWithdraw,
    Paused,
    Unpaused,
    OwnershipTransferred,
]

_EVENT_TYPES = {
    EventKind.GAME_PLAYED: GamePlayed,
    EventKind.FUNDS_DEPOSITED: FundsDeposited,
    EventKind.FUNDS_WITHDRAWN: FundsWithdrawn,
    EventKind.EMERGENCY_WITHDRAW: EmergencyWithdraw,
    EventKind.PAUSED: Paused,
    EventKind.UNPAUSED: Unpaused,
    EventKind.OWNERSHIP_TRANSFERRED: OwnershipTransferred,
}


def event_to_dict(event: LedgerEvent) -> dict:
    """Flatten an event into JSON-safe primitives, with ``type`` as the tag."""
    data = asdict(event)
    data["type"] = data.pop("kind").value
    for key in ("chosen_side", "result_side"):
        if key in data:
            data[key] = data[key].value
    if isinstance(event, GamePlayed):
        data["event_key"] = event.event_key
    return data


def event_from_dict(data: dict) -> LedgerEvent:
    """Rebuild an event from ``event_to_dict`` output. Raises ValueError on bad input."""
    payload = dict(data)
    try:
        kind = EventKind(payload.pop("type"))
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unknown event type: {data.get('type')!r}") from e

    payload.pop("event_key", None)
    for key in ("chosen_side", "result_side"):
        if key in payload:
            payload[key] = CoinSide.parse(payload[key])

    try:
        return _EVENT_TYPES[kind](**payload)
    except TypeError as e:
        raise ValueError(f"Malformed {kind.value} event: {e}") from e


Subscriber = Callable[[LedgerEvent], None]


class EventBus:
    """Synchronous fan-out of committed ledger events to subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self.delivered: Dict[EventKind, int] = {kind: 0 for kind in EventKind}

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that removes it."""
        self._subscribers.append(subscriber)

        def unsubscribe():
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: LedgerEvent):
        # A failing subscriber must not undo a committed operation or starve the others
        self.delivered[event.kind] += 1
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={"event_type": event.kind.value, "subscriber": repr(subscriber)},
                )
