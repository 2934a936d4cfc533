"""
Ledger records: coin sides, per-player aggregates, and the immutable game log.
"""

from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Optional

from shardflip.core.exceptions import ValidationError, INVALID_SIDE


class CoinSide(str, Enum):
    HEADS = "heads"
    TAILS = "tails"

    @classmethod
    def parse(cls, value) -> "CoinSide":
        """Accept a CoinSide, "heads"/"tails" in any case, or a bool (True is heads)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            return cls.HEADS if value else cls.TAILS
        if isinstance(value, str):
            normalized = value.lower().strip()
            for side in cls:
                if side.value == normalized:
                    return side
        raise ValidationError(
            f"Invalid choice: {value!r}. Must be 'heads' or 'tails'.", code=INVALID_SIDE
        )


@dataclass
class PlayerRecord:
    """Cumulative statistics for one identity. Only settlement mutates it."""

    total_games: int = 0
    total_wins: int = 0
    total_wagered: int = 0
    total_won: int = 0
    first_played_at: int = 0
    last_played_at: int = 0

    @property
    def win_rate(self) -> float:
        if not self.total_games:
            return 0.0
        return round(self.total_wins / self.total_games * 100, 2)

    @property
    def net_profit(self) -> int:
        return self.total_won - self.total_wagered

    def copy(self) -> "PlayerRecord":
        return replace(self)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["win_rate"] = self.win_rate
        data["net_profit"] = self.net_profit
        return data


@dataclass(frozen=True)
class GameRecord:
    """One settled bet. Created at settlement and never modified."""

    index: int
    player: str
    bet_amount: int
    chosen_side: CoinSide
    result_side: CoinSide
    payout: int
    timestamp: int

    @property
    def won(self) -> bool:
        return self.chosen_side == self.result_side

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "player": self.player,
            "bet_amount": self.bet_amount,
            "chosen_side": self.chosen_side.value,
            "result_side": self.result_side.value,
            "won": self.won,
            "payout": self.payout,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class GameStats:
    total_games: int
    total_volume: int
    total_payout: int
    active_users: int


@dataclass(frozen=True)
class LeaderboardEntry:
    player: str
    wins: int
    total_wagered: int
    total_games: int
    net_profit: int


@dataclass(frozen=True)
class LedgerStatus:
    owner: str
    paused: bool
    pool_balance: int
    min_bet: int
    max_bet: int
    payout_multiplier: int
    total_active_users: int
    commitment: Optional[str] = None
