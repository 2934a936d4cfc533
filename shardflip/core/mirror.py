"""
StatsMirror: a denormalized read model of ledger settlements.

It consumes ``GamePlayed`` events (delivered at least once) and keeps per-wallet
aggregates for leaderboards and dashboards. Every event is recorded under its
``event_key`` first; a key seen before is skipped, so replays never double count.
Query results are cached for a short TTL and dropped whenever an event lands.
"""

import math
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from shardflip.core.events import GamePlayed, LedgerEvent
from shardflip.core.logger import get_logger

logger = get_logger("mirror")

LEADERBOARD_FIELDS = {
    "wins": "total_wins",
    "games": "total_games",
    "winnings": "total_won",
}

# Sortable columns for the user listing
USER_SORT_FIELDS = (
    "registered_at",
    "last_updated",
    "total_games",
    "total_wins",
    "total_wagered",
    "total_won",
)

_AMOUNT_WIDTH = 40


def _pad(amount: int) -> str:
    if amount < 0:
        raise ValueError(f"Amounts are non-negative, got {amount}")
    # Fixed-width text keeps numeric order under SQL ORDER BY without 64-bit overflow
    return f"{amount:0{_AMOUNT_WIDTH}d}"


class TTLCache:
    """Tiny thread-safe key/value cache with per-entry expiry."""

    def __init__(self, ttl_seconds: float, max_keys: int = 1000, clock=time.monotonic):
        self.ttl = ttl_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        # Bumped by clear(); a load that straddles a clear is not cached
        self._generation = 0
        self.hits = 0
        self.misses = 0

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._data.get(key)
            if entry and entry[0] > now:
                self.hits += 1
                return entry[1]
            self.misses += 1
            generation = self._generation
        value = factory()
        with self._lock:
            if generation != self._generation:
                return value
            if len(self._data) >= self.max_keys:
                self._purge(now)
            if len(self._data) < self.max_keys:
                self._data[key] = (now + self.ttl, value)
        return value

    def _purge(self, now: float):
        for key in [k for k, (expires, _) in self._data.items() if expires <= now]:
            del self._data[key]

    def purge_expired(self) -> int:
        with self._lock:
            before = len(self._data)
            self._purge(self._clock())
            return before - len(self._data)

    def clear(self):
        with self._lock:
            self._data.clear()
            self._generation += 1


class StatsMirror:
    def __init__(self, db_path: Path, cache_ttl_seconds: float = 30):
        self.db_path = Path(db_path)
        self._local = threading.local()
        self.cache = TTLCache(cache_ttl_seconds)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing stats mirror at {self.db_path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "connection", None) is None:
            self._local.connection = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None
            )
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    def close(self):
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None

    def _init_db(self):
        cursor = self._get_connection().cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                wallet_address TEXT UNIQUE NOT NULL,
                has_played_game INTEGER DEFAULT 0,
                total_games INTEGER DEFAULT 0,
                total_wins INTEGER DEFAULT 0,
                total_losses INTEGER DEFAULT 0,
                total_wagered TEXT NOT NULL,
                total_won TEXT NOT NULL,
                last_game_result TEXT,
                registered_at TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
        """
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_wins ON users(total_wins DESC)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_games ON users(total_games DESC)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_won ON users(total_won DESC)")

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS processed_events (
                event_key TEXT PRIMARY KEY,
                game_index INTEGER NOT NULL,
                processed_at TEXT NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS totals (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                total_games INTEGER DEFAULT 0,
                total_wins INTEGER DEFAULT 0,
                total_volume TEXT NOT NULL,
                total_payout TEXT NOT NULL
            )
        """
        )
        cursor.execute(
            "INSERT OR IGNORE INTO totals (id, total_volume, total_payout) VALUES (1, ?, ?)",
            (_pad(0), _pad(0)),
        )

    @contextmanager
    def _transaction(self):
        cursor = self._get_connection().cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            yield cursor
        except BaseException:
            cursor.execute("ROLLBACK")
            raise
        else:
            cursor.execute("COMMIT")

    # ==================== Writes ====================

    def _insert_user(self, cursor: sqlite3.Cursor, address: str, now: str):
        cursor.execute(
            """
            INSERT OR IGNORE INTO users (wallet_address, total_wagered, total_won, registered_at, last_updated)
            VALUES (?, ?, ?, ?, ?)
        """,
            (address, _pad(0), _pad(0), now, now),
        )
        return cursor.rowcount == 1

    def register(self, address: str) -> Tuple[Dict, bool]:
        """Create the wallet entry if missing. Returns (user, created)."""
        address = address.strip().lower()
        with self._transaction() as cursor:
            created = self._insert_user(cursor, address, datetime.now().isoformat())
        if created:
            self.cache.clear()
            logger.info(f"Registered wallet {address}")
        return self.get_user(address), created

    def apply(self, event: LedgerEvent) -> bool:
        """
        Fold one event into the read model.

        Returns False for events that carry no game or whose key was already
        applied; in both cases nothing changes.
        """
        if not isinstance(event, GamePlayed):
            return False

        address = event.player.strip().lower()
        now = datetime.now().isoformat()

        with self._transaction() as cursor:
            cursor.execute(
                "INSERT OR IGNORE INTO processed_events (event_key, game_index, processed_at) VALUES (?, ?, ?)",
                (event.event_key, event.index, now),
            )
            if cursor.rowcount == 0:
                logger.debug("Skipping duplicate event", extra={"event_key": event.event_key})
                return False

            self._insert_user(cursor, address, now)
            cursor.execute(
                "SELECT total_wagered, total_won FROM users WHERE wallet_address = ?", (address,)
            )
            row = cursor.fetchone()
            wagered = int(row["total_wagered"]) + event.bet_amount
            won = int(row["total_won"]) + (event.payout if event.won else 0)

            cursor.execute(
                """
                UPDATE users SET
                    has_played_game = 1,
                    total_games = total_games + 1,
                    total_wins = total_wins + ?,
                    total_losses = total_losses + ?,
                    total_wagered = ?,
                    total_won = ?,
                    last_game_result = ?,
                    last_updated = ?
                WHERE wallet_address = ?
            """,
                (
                    int(event.won),
                    int(not event.won),
                    _pad(wagered),
                    _pad(won),
                    "win" if event.won else "loss",
                    now,
                    address,
                ),
            )

            cursor.execute("SELECT total_volume, total_payout FROM totals WHERE id = 1")
            totals = cursor.fetchone()
            cursor.execute(
                """
                UPDATE totals SET
                    total_games = total_games + 1,
                    total_wins = total_wins + ?,
                    total_volume = ?,
                    total_payout = ?
                WHERE id = 1
            """,
                (
                    int(event.won),
                    _pad(int(totals["total_volume"]) + event.bet_amount),
                    _pad(int(totals["total_payout"]) + event.payout),
                ),
            )

        self.cache.clear()
        return True

    def catch_up(self, ledger) -> int:
        """Apply every ledger game not yet mirrored. Returns how many were applied."""
        processed = self.processed_indices()
        applied = 0
        for index in range(ledger.get_total_games()):
            if index in processed:
                continue
            if self.apply(GamePlayed.from_record(ledger.get_game_by_index(index))):
                applied += 1
        if applied:
            logger.info(f"Mirror caught up {applied} game(s) from ledger history")
        return applied

    # ==================== Reads ====================

    def processed_indices(self) -> set:
        cursor = self._get_connection().cursor()
        cursor.execute("SELECT game_index FROM processed_events")
        return {row["game_index"] for row in cursor.fetchall()}

    def high_water_mark(self) -> int:
        """Highest game index applied so far, or -1."""
        cursor = self._get_connection().cursor()
        cursor.execute("SELECT MAX(game_index) AS hw FROM processed_events")
        row = cursor.fetchone()
        return -1 if row["hw"] is None else row["hw"]

    @staticmethod
    def _user_dict(row: sqlite3.Row) -> Dict:
        wagered = int(row["total_wagered"])
        won = int(row["total_won"])
        games = row["total_games"]
        return {
            "wallet_address": row["wallet_address"],
            "has_played_game": bool(row["has_played_game"]),
            "total_games": games,
            "total_wins": row["total_wins"],
            "total_losses": row["total_losses"],
            "total_wagered": wagered,
            "total_won": won,
            "net_profit": won - wagered,
            "win_rate": round(row["total_wins"] / games * 100, 2) if games else 0.0,
            "last_game_result": row["last_game_result"],
            "registered_at": row["registered_at"],
            "last_updated": row["last_updated"],
        }

    def get_user(self, address: str) -> Optional[Dict]:
        address = address.strip().lower()

        def load():
            cursor = self._get_connection().cursor()
            cursor.execute("SELECT * FROM users WHERE wallet_address = ?", (address,))
            row = cursor.fetchone()
            return self._user_dict(row) if row else None

        return self.cache.get_or_set(f"user_{address}", load)

    def leaderboard(self, kind: str = "wins", limit: int = 20) -> List[Dict]:
        """Players who have played, best first; ties go to the earlier registration."""
        if kind not in LEADERBOARD_FIELDS:
            raise ValueError(f"Unknown leaderboard type: {kind!r}")
        column = LEADERBOARD_FIELDS[kind]

        def load():
            cursor = self._get_connection().cursor()
            cursor.execute(
                f"""
                SELECT * FROM users WHERE has_played_game = 1
                ORDER BY {column} DESC, id ASC LIMIT ?
            """,
                (limit,),
            )
            return [
                {"rank": rank, **self._user_dict(row)}
                for rank, row in enumerate(cursor.fetchall(), start=1)
            ]

        return self.cache.get_or_set(f"leaderboard_{kind}_{limit}", load)

    def list_users(
        self, page: int = 1, limit: int = 50, sort_by: str = "registered_at", order: str = "desc"
    ) -> Dict:
        """One page of registered wallets plus pagination info. ``sort_by`` must be in USER_SORT_FIELDS."""
        if sort_by not in USER_SORT_FIELDS:
            raise ValueError(f"Unknown sort field: {sort_by!r}")
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        direction = "ASC" if order == "asc" else "DESC"
        offset = (page - 1) * limit

        def load():
            cursor = self._get_connection().cursor()
            cursor.execute("SELECT COUNT(*) AS total FROM users")
            total = cursor.fetchone()["total"]
            cursor.execute(
                f"SELECT * FROM users ORDER BY {sort_by} {direction}, id {direction} LIMIT ? OFFSET ?",
                (limit, offset),
            )
            users = [self._user_dict(row) for row in cursor.fetchall()]
            return {
                "users": users,
                "pagination": {
                    "current_page": page,
                    "total_pages": math.ceil(total / limit),
                    "total_users": total,
                    "has_more": offset + len(users) < total,
                },
            }

        return self.cache.get_or_set(f"users_{sort_by}_{direction}_{page}_{limit}", load)

    def stats(self) -> Dict:
        def load():
            cursor = self._get_connection().cursor()
            cursor.execute(
                "SELECT COUNT(*) AS users, COALESCE(SUM(has_played_game), 0) AS active FROM users"
            )
            counts = cursor.fetchone()
            cursor.execute("SELECT * FROM totals WHERE id = 1")
            totals = cursor.fetchone()
            total_games = totals["total_games"]
            return {
                "total_users": counts["users"],
                "active_players": counts["active"],
                "total_games": total_games,
                "total_wins": totals["total_wins"],
                "total_volume": int(totals["total_volume"]),
                "total_payout": int(totals["total_payout"]),
                "win_rate": round(totals["total_wins"] / total_games * 100, 2)
                if total_games
                else 0.0,
            }

        return self.cache.get_or_set("global_stats", load)
