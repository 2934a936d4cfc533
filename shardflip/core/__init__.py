"""Ledger core: settlement, persistence, events and the stats mirror."""

from .ledger import BettingLedger
from .models import CoinSide, GameRecord, PlayerRecord
from .events import EventBus, GamePlayed
from .mirror import StatsMirror
from .wallets import WalletBook

__all__ = [
    "BettingLedger",
    "CoinSide",
    "GameRecord",
    "PlayerRecord",
    "EventBus",
    "GamePlayed",
    "StatsMirror",
    "WalletBook",
]
