"""
The betting ledger: pooled funds, bet settlement, player statistics and the
append-only game history.

Every mutation runs under one write lock and either applies all of its effects
or none. Bookkeeping is committed before any funds leave the ledger; if the
outgoing transfer fails the store transaction is rolled back and the in-memory
state restored, so a payout is never recorded unless it was delivered.
"""

import threading
import time
from contextlib import contextmanager, nullcontext
from typing import Callable, Dict, List, Optional

from shardflip.core.events import (
    EventBus,
    GamePlayed,
    FundsDeposited,
    FundsWithdrawn,
    EmergencyWithdraw,
    Paused,
    Unpaused,
    OwnershipTransferred,
)
from shardflip.core.exceptions import (
    AuthorizationError,
    AvailabilityError,
    LiquidityError,
    NotFoundError,
    ReentrancyError,
    TransferError,
    ValidationError,
    BET_TOO_HIGH,
    BET_TOO_LOW,
    INSUFFICIENT_POOL_BALANCE,
    INSUFFICIENT_POOL_LIQUIDITY,
    INVALID_AMOUNT,
    INVALID_OWNER,
    NOT_OWNER,
    PAYMENT_NOT_ATTACHED,
    UNSUPPORTED,
)
from shardflip.core.logger import get_logger
from shardflip.core.models import (
    CoinSide,
    GameRecord,
    GameStats,
    LeaderboardEntry,
    LedgerStatus,
    PlayerRecord,
)
from shardflip.core.rng import SecureCoinSource
from shardflip.core.store import LedgerStore

logger = get_logger("ledger")

Transfer = Callable[[str, int], None]


def normalize_identity(address: str) -> str:
    return address.strip().lower()


def is_null_identity(address: Optional[str]) -> bool:
    """Empty, or the zero address (0x followed only by zeros)."""
    if address is None:
        return True
    address = address.strip().lower()
    if not address:
        return True
    if address.startswith("0x"):
        return set(address[2:]) <= {"0"}
    return False


def _require_amount(value, name: str = "amount"):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount", code=INVALID_AMOUNT)


class BettingLedger:
    """
    Single-asset pooled coin-flip ledger.

    Args:
        owner: identity allowed to pause, withdraw and transfer ownership
        min_bet, max_bet: inclusive bounds on one stake
        payout_multiplier: a winning stake pays ``stake * payout_multiplier``
        coin_source: object with ``draw(player, nonce) -> CoinSide``
        transfer: ``transfer(recipient, amount)``; raises TransferError when funds
            cannot be delivered. ``None`` keeps payouts notional.
        event_bus: receives events after each committed operation
        store: optional LedgerStore; existing state is loaded from it
        clock: returns the current unix timestamp
        recent_window: default size of ``get_recent_games``
        initial_pool: opening pool balance for a fresh ledger
    """

    def __init__(
        self,
        owner: str,
        min_bet: int,
        max_bet: int,
        payout_multiplier: int = 2,
        coin_source=None,
        transfer: Optional[Transfer] = None,
        event_bus: Optional[EventBus] = None,
        store: Optional[LedgerStore] = None,
        clock: Optional[Callable[[], int]] = None,
        recent_window: int = 50,
        initial_pool: int = 0,
    ):
        if is_null_identity(owner):
            raise ValueError("Ledger owner must be a non-null identity")
        if min_bet < 0 or min_bet > max_bet:
            raise ValueError(f"Invalid bet bounds: min={min_bet} max={max_bet}")
        if payout_multiplier < 1:
            raise ValueError("payout_multiplier must be at least 1")

        self.min_bet = min_bet
        self.max_bet = max_bet
        self.payout_multiplier = payout_multiplier
        self.recent_window = recent_window

        self.coin_source = coin_source or SecureCoinSource()
        self.event_bus = event_bus or EventBus()
        self._transfer = transfer
        self._store = store
        self._clock = clock or (lambda: int(time.time()))

        self._lock = threading.RLock()
        self._entered = False

        self._owner = normalize_identity(owner)
        self._paused = False
        self._pool_balance = initial_pool
        self._total_active_users = 0
        self._total_volume = 0
        self._total_payout = 0
        # Insertion order is first-played order
        self._players: Dict[str, PlayerRecord] = {}
        self._player_seq: Dict[str, int] = {}
        self._games: List[GameRecord] = []

        if store is not None:
            self._load_or_initialize(store)

    # ==================== Persistence ====================

    def _load_or_initialize(self, store: LedgerStore):
        state = store.load_state()
        if state is None:
            with store.transaction() as cursor:
                store.save_state(cursor, self._state_row())
            logger.info("Initialized fresh ledger", extra={"owner": self._owner})
            return

        self._owner = state["owner"]
        self._paused = state["paused"]
        self._pool_balance = state["pool_balance"]
        self._total_active_users = state["total_active_users"]
        self._total_volume = state["total_volume"]
        self._total_payout = state["total_payout"]
        self._players = dict(store.load_players())
        self._player_seq = {address: seq for seq, address in enumerate(self._players)}
        self._games = store.load_games()
        logger.info(
            "Loaded ledger from store",
            extra={"games": len(self._games), "players": len(self._players)},
        )

    def _state_row(self) -> dict:
        return {
            "owner": self._owner,
            "paused": self._paused,
            "pool_balance": self._pool_balance,
            "min_bet": self.min_bet,
            "max_bet": self.max_bet,
            "payout_multiplier": self.payout_multiplier,
            "total_active_users": self._total_active_users,
            "total_volume": self._total_volume,
            "total_payout": self._total_payout,
            "updated_at": self._clock(),
        }

    def _transaction(self):
        if self._store is None:
            return nullcontext()
        return self._store.transaction()

    # ==================== Atomicity ====================

    @contextmanager
    def _mutation(self):
        with self._lock:
            if self._entered:
                raise ReentrancyError("Reentrant call rejected")
            self._entered = True
            try:
                yield
            finally:
                self._entered = False

    def _snapshot(self, player: Optional[str] = None) -> dict:
        record = self._players.get(player) if player else None
        return {
            "owner": self._owner,
            "paused": self._paused,
            "pool_balance": self._pool_balance,
            "total_active_users": self._total_active_users,
            "total_volume": self._total_volume,
            "total_payout": self._total_payout,
            "games": len(self._games),
            "player": player,
            "record": record.copy() if record else None,
        }

    def _restore(self, snapshot: dict):
        self._owner = snapshot["owner"]
        self._paused = snapshot["paused"]
        self._pool_balance = snapshot["pool_balance"]
        self._total_active_users = snapshot["total_active_users"]
        self._total_volume = snapshot["total_volume"]
        self._total_payout = snapshot["total_payout"]
        del self._games[snapshot["games"]:]

        player = snapshot["player"]
        if player is not None:
            if snapshot["record"] is None:
                self._players.pop(player, None)
                self._player_seq.pop(player, None)
            else:
                self._players[player] = snapshot["record"]

    def _send(self, recipient: str, amount: int):
        if self._transfer is None or amount == 0:
            return
        try:
            self._transfer(recipient, amount)
        except TransferError:
            raise
        except Exception as e:
            raise TransferError(f"Transfer of {amount} to {recipient} failed: {e}") from e

    def _require_owner(self, caller: str):
        if normalize_identity(caller) != self._owner:
            raise AuthorizationError("Caller is not the owner", code=NOT_OWNER)

    # ==================== Betting ====================

    def place_bet(
        self, player: str, stake_amount: int, chosen_side, attached_value: int
    ) -> GameRecord:
        """
        Settle one wager.

        Preconditions, in order: not paused; min_bet <= stake <= max_bet; the
        pool covers ``stake * payout_multiplier``; ``attached_value`` equals
        the stake. The first failure raises with nothing changed.
        """
        side = CoinSide.parse(chosen_side)
        _require_amount(stake_amount, "stake_amount")
        _require_amount(attached_value, "attached_value")
        player = normalize_identity(player)

        with self._mutation():
            if self._paused:
                raise AvailabilityError("Betting is paused")
            if stake_amount < self.min_bet:
                raise ValidationError("Bet amount too low", code=BET_TOO_LOW)
            if stake_amount > self.max_bet:
                raise ValidationError("Bet amount too high", code=BET_TOO_HIGH)
            max_payout = stake_amount * self.payout_multiplier
            if self._pool_balance < max_payout:
                raise LiquidityError(
                    "Insufficient contract balance", code=INSUFFICIENT_POOL_LIQUIDITY
                )
            if attached_value != stake_amount:
                raise ValidationError(
                    f"Attached value {attached_value} does not match stake {stake_amount}",
                    code=PAYMENT_NOT_ATTACHED,
                )

            snapshot = self._snapshot(player)
            try:
                game = self._settle(player, stake_amount, side)
                with self._transaction() as cursor:
                    if cursor is not None:
                        self._store.save_state(cursor, self._state_row())
                        self._store.save_player(
                            cursor,
                            player,
                            self._player_seq[player],
                            self._players[player],
                        )
                        self._store.append_game(cursor, game)
                    # Funds leave last, after every record above is in place
                    self._send(player, game.payout)
            except BaseException:
                self._restore(snapshot)
                logger.warning(
                    "Bet rolled back",
                    extra={"player": player, "stake": stake_amount},
                )
                raise

            logger.info(
                "Bet settled",
                extra={
                    "player": player,
                    "stake": stake_amount,
                    "choice": side.value,
                    "result": game.result_side.value,
                    "payout": game.payout,
                    "index": game.index,
                },
            )
            # Still under the write lock, so subscribers see games in index order
            self.event_bus.publish(GamePlayed.from_record(game))
        return game

    def _settle(self, player: str, stake_amount: int, side: CoinSide) -> GameRecord:
        # Stake goes into custody before the outcome is known
        self._pool_balance += stake_amount

        index = len(self._games)
        result = self.coin_source.draw(player, index)
        won = result == side
        payout = stake_amount * self.payout_multiplier if won else 0
        self._pool_balance -= payout

        now = self._clock()
        record = self._players.get(player)
        if record is None:
            record = PlayerRecord(first_played_at=now)
            self._players[player] = record
            self._player_seq[player] = len(self._player_seq)
            self._total_active_users += 1

        record.total_games += 1
        record.total_wagered += stake_amount
        record.last_played_at = now
        if won:
            record.total_wins += 1
            record.total_won += payout

        self._total_volume += stake_amount
        self._total_payout += payout

        game = GameRecord(
            index=index,
            player=player,
            bet_amount=stake_amount,
            chosen_side=side,
            result_side=result,
            payout=payout,
            timestamp=now,
        )
        self._games.append(game)
        return game

    # ==================== Funds ====================

    def deposit_funds(self, sender: str, amount: int) -> int:
        """
        Add ``amount`` to the pool. Any caller may deposit, not only the owner.
        Returns the new pool balance.
        """
        _require_amount(amount)
        sender = normalize_identity(sender)
        with self._mutation():
            if amount <= 0:
                raise ValidationError("Deposit must be greater than zero", code=INVALID_AMOUNT)
            snapshot = self._snapshot()
            try:
                self._pool_balance += amount
                with self._transaction() as cursor:
                    if cursor is not None:
                        self._store.save_state(cursor, self._state_row())
            except BaseException:
                self._restore(snapshot)
                raise
            balance = self._pool_balance

            logger.info("Funds deposited", extra={"sender": sender, "amount": amount})
            self.event_bus.publish(FundsDeposited(sender=sender, amount=amount))
        return balance

    def withdraw_funds(self, caller: str, amount: int) -> int:
        """Owner only. Send ``amount`` from the pool to the owner. Returns the new balance."""
        _require_amount(amount)
        with self._mutation():
            self._require_owner(caller)
            if amount <= 0:
                raise ValidationError("Withdrawal must be greater than zero", code=INVALID_AMOUNT)
            if amount > self._pool_balance:
                raise LiquidityError(
                    "Insufficient contract balance", code=INSUFFICIENT_POOL_BALANCE
                )
            owner = self._owner
            self._debit_pool_to_owner(amount)
            balance = self._pool_balance

            logger.info("Funds withdrawn", extra={"owner": owner, "amount": amount})
            self.event_bus.publish(FundsWithdrawn(owner=owner, amount=amount))
        return balance

    def emergency_withdraw(self, caller: str) -> int:
        """Owner only. Drain the whole pool to the owner. Returns the amount drained."""
        with self._mutation():
            self._require_owner(caller)
            owner = self._owner
            amount = self._pool_balance
            self._debit_pool_to_owner(amount)

            logger.warning("Emergency withdraw", extra={"owner": owner, "amount": amount})
            self.event_bus.publish(EmergencyWithdraw(owner=owner, amount=amount))
        return amount

    def _debit_pool_to_owner(self, amount: int):
        snapshot = self._snapshot()
        try:
            self._pool_balance -= amount
            with self._transaction() as cursor:
                if cursor is not None:
                    self._store.save_state(cursor, self._state_row())
                self._send(self._owner, amount)
        except BaseException:
            self._restore(snapshot)
            raise

    # ==================== Admin ====================

    def set_paused(self, caller: str, paused: bool) -> bool:
        """Owner only. Returns True if the flag changed; setting the current value is a no-op."""
        with self._mutation():
            self._require_owner(caller)
            if self._paused == paused:
                return False
            snapshot = self._snapshot()
            try:
                self._paused = paused
                with self._transaction() as cursor:
                    if cursor is not None:
                        self._store.save_state(cursor, self._state_row())
            except BaseException:
                self._restore(snapshot)
                raise
            account = self._owner

            logger.info("Ledger paused" if paused else "Ledger unpaused", extra={"owner": account})
            self.event_bus.publish(Paused(account=account) if paused else Unpaused(account=account))
        return True

    def pause(self, caller: str) -> bool:
        return self.set_paused(caller, True)

    def unpause(self, caller: str) -> bool:
        return self.set_paused(caller, False)

    def transfer_ownership(self, caller: str, new_owner: str) -> str:
        with self._mutation():
            self._require_owner(caller)
            if is_null_identity(new_owner):
                raise AuthorizationError("New owner is the zero address", code=INVALID_OWNER)
            previous = self._owner
            snapshot = self._snapshot()
            try:
                self._owner = normalize_identity(new_owner)
                with self._transaction() as cursor:
                    if cursor is not None:
                        self._store.save_state(cursor, self._state_row())
            except BaseException:
                self._restore(snapshot)
                raise
            current = self._owner

            logger.info("Ownership transferred", extra={"previous": previous, "new_owner": current})
            self.event_bus.publish(OwnershipTransferred(previous_owner=previous, new_owner=current))
        return current

    def rotate_seed(self, caller: str) -> dict:
        """Owner only. Reveal the commit-reveal seed and commit to a new one."""
        with self._mutation():
            self._require_owner(caller)
            rotate = getattr(self.coin_source, "rotate", None)
            if rotate is None:
                raise ValidationError(
                    "The outcome source has no seed to rotate", code=UNSUPPORTED
                )
            revealed = rotate()
        logger.info("Server seed rotated", extra={"next_commitment": revealed["next_commitment"]})
        return revealed

    # ==================== Views ====================

    @property
    def owner(self) -> str:
        with self._lock:
            return self._owner

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def pool_balance(self) -> int:
        with self._lock:
            return self._pool_balance

    @property
    def total_active_users(self) -> int:
        with self._lock:
            return self._total_active_users

    def status(self) -> LedgerStatus:
        with self._lock:
            return LedgerStatus(
                owner=self._owner,
                paused=self._paused,
                pool_balance=self._pool_balance,
                min_bet=self.min_bet,
                max_bet=self.max_bet,
                payout_multiplier=self.payout_multiplier,
                total_active_users=self._total_active_users,
                commitment=getattr(self.coin_source, "commitment", None),
            )

    def get_player_stats(self, player: str) -> PlayerRecord:
        """Aggregates for ``player``; a zeroed record if it never played."""
        with self._lock:
            record = self._players.get(normalize_identity(player))
            return record.copy() if record else PlayerRecord()

    def has_player_played(self, player: str) -> bool:
        with self._lock:
            return normalize_identity(player) in self._players

    def get_game_stats(self) -> GameStats:
        with self._lock:
            return GameStats(
                total_games=len(self._games),
                total_volume=self._total_volume,
                total_payout=self._total_payout,
                active_users=self._total_active_users,
            )

    def get_recent_games(self, window: Optional[int] = None) -> List[GameRecord]:
        """The last ``window`` settled games, most recent first."""
        if window is None:
            window = self.recent_window
        if window <= 0:
            return []
        with self._lock:
            return list(reversed(self._games[-window:]))

    def get_game_by_index(self, index: int) -> GameRecord:
        with self._lock:
            if index < 0 or index >= len(self._games):
                raise NotFoundError(f"No game at index {index}")
            return self._games[index]

    def get_total_games(self) -> int:
        with self._lock:
            return len(self._games)

    def get_player_games(self, player: str, limit: int) -> List[GameRecord]:
        """Up to ``limit`` games of ``player``, most recent first."""
        player = normalize_identity(player)
        found = []
        if limit <= 0:
            return found
        with self._lock:
            for game in reversed(self._games):
                if game.player == player:
                    found.append(game)
                    if len(found) >= limit:
                        break
        return found

    def get_top_players(self, limit: int) -> List[LeaderboardEntry]:
        """Players ranked by wins; equal win counts keep first-played order."""
        if limit <= 0:
            return []
        with self._lock:
            # sorted() is stable, and the dict iterates in first-played order
            ranked = sorted(self._players.items(), key=lambda item: -item[1].total_wins)
            return [
                LeaderboardEntry(
                    player=address,
                    wins=record.total_wins,
                    total_wagered=record.total_wagered,
                    total_games=record.total_games,
                    net_profit=record.net_profit,
                )
                for address, record in ranked[:limit]
            ]
