"""
SQLite persistence for the betting ledger.

Layout: one ledger row, one row per player, and the append-only games log.
Writes happen inside ``transaction()`` so a settlement is stored entirely or
not at all.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

from shardflip.core.logger import get_logger
from shardflip.core.models import CoinSide, GameRecord, PlayerRecord

logger = get_logger("store")


class LedgerStore:
    """Thread-safe SQLite wrapper holding ledger state."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._local = threading.local()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing ledger store at {self.db_path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "connection", None) is None:
            # Autocommit mode: transactions are opened explicitly in transaction()
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
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                owner TEXT NOT NULL,
                paused INTEGER DEFAULT 0,
                pool_balance TEXT NOT NULL,
                min_bet TEXT NOT NULL,
                max_bet TEXT NOT NULL,
                payout_multiplier INTEGER NOT NULL,
                total_active_users INTEGER DEFAULT 0,
                total_volume TEXT DEFAULT '0',
                total_payout TEXT DEFAULT '0',
                updated_at INTEGER
            )
        """
        )

        # Amounts are stored as TEXT: base units overflow SQLite's 64-bit integers
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS players (
                address TEXT PRIMARY KEY,
                seq INTEGER NOT NULL,
                total_games INTEGER DEFAULT 0,
                total_wins INTEGER DEFAULT 0,
                total_wagered TEXT DEFAULT '0',
                total_won TEXT DEFAULT '0',
                first_played_at INTEGER,
                last_played_at INTEGER
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS games (
                idx INTEGER PRIMARY KEY,
                player TEXT NOT NULL,
                bet_amount TEXT NOT NULL,
                chosen_side TEXT NOT NULL,
                result_side TEXT NOT NULL,
                won INTEGER NOT NULL,
                payout TEXT NOT NULL,
                timestamp INTEGER NOT NULL
            )
        """
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_games_player ON games(player)")

    @contextmanager
    def transaction(self):
        """Yield a cursor inside BEGIN IMMEDIATE; commit on success, roll back on error."""
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            yield cursor
        except BaseException:
            cursor.execute("ROLLBACK")
            raise
        else:
            cursor.execute("COMMIT")

    # ==================== Writes (inside a transaction) ====================

    def save_state(self, cursor: sqlite3.Cursor, state: Dict):
        cursor.execute(
            """
            INSERT INTO ledger_state (id, owner, paused, pool_balance, min_bet, max_bet,
                payout_multiplier, total_active_users, total_volume, total_payout, updated_at)
            VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner = excluded.owner,
                paused = excluded.paused,
                pool_balance = excluded.pool_balance,
                min_bet = excluded.min_bet,
                max_bet = excluded.max_bet,
                payout_multiplier = excluded.payout_multiplier,
                total_active_users = excluded.total_active_users,
                total_volume = excluded.total_volume,
                total_payout = excluded.total_payout,
                updated_at = excluded.updated_at
        """,
            (
                state["owner"],
                int(state["paused"]),
                str(state["pool_balance"]),
                str(state["min_bet"]),
                str(state["max_bet"]),
                state["payout_multiplier"],
                state["total_active_users"],
                str(state["total_volume"]),
                str(state["total_payout"]),
                state["updated_at"],
            ),
        )

    def save_player(self, cursor: sqlite3.Cursor, address: str, seq: int, record: PlayerRecord):
        cursor.execute(
            """
            INSERT INTO players (address, seq, total_games, total_wins, total_wagered,
                total_won, first_played_at, last_played_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                total_games = excluded.total_games,
                total_wins = excluded.total_wins,
                total_wagered = excluded.total_wagered,
                total_won = excluded.total_won,
                last_played_at = excluded.last_played_at
        """,
            (
                address,
                seq,
                record.total_games,
                record.total_wins,
                str(record.total_wagered),
                str(record.total_won),
                record.first_played_at,
                record.last_played_at,
            ),
        )

    def append_game(self, cursor: sqlite3.Cursor, game: GameRecord):
        cursor.execute(
            """
            INSERT INTO games (idx, player, bet_amount, chosen_side, result_side, won, payout, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                game.index,
                game.player,
                str(game.bet_amount),
                game.chosen_side.value,
                game.result_side.value,
                int(game.won),
                str(game.payout),
                game.timestamp,
            ),
        )

    # ==================== Reads ====================

    def load_state(self) -> Optional[Dict]:
        cursor = self._get_connection().cursor()
        cursor.execute("SELECT * FROM ledger_state WHERE id = 1")
        row = cursor.fetchone()
        if not row:
            return None
        return {
            "owner": row["owner"],
            "paused": bool(row["paused"]),
            "pool_balance": int(row["pool_balance"]),
            "min_bet": int(row["min_bet"]),
            "max_bet": int(row["max_bet"]),
            "payout_multiplier": row["payout_multiplier"],
            "total_active_users": row["total_active_users"],
            "total_volume": int(row["total_volume"]),
            "total_payout": int(row["total_payout"]),
        }

    def load_players(self) -> List[tuple]:
        """Players in first-played order as (address, PlayerRecord)."""
        cursor = self._get_connection().cursor()
        cursor.execute("SELECT * FROM players ORDER BY seq ASC")
        return [
            (
                row["address"],
                PlayerRecord(
                    total_games=row["total_games"],
                    total_wins=row["total_wins"],
                    total_wagered=int(row["total_wagered"]),
                    total_won=int(row["total_won"]),
                    first_played_at=row["first_played_at"] or 0,
                    last_played_at=row["last_played_at"] or 0,
                ),
            )
            for row in cursor.fetchall()
        ]

    def load_games(self) -> List[GameRecord]:
        cursor = self._get_connection().cursor()
        cursor.execute("SELECT * FROM games ORDER BY idx ASC")
        return [
            GameRecord(
                index=row["idx"],
                player=row["player"],
                bet_amount=int(row["bet_amount"]),
                chosen_side=CoinSide(row["chosen_side"]),
                result_side=CoinSide(row["result_side"]),
                payout=int(row["payout"]),
                timestamp=row["timestamp"],
            )
            for row in cursor.fetchall()
        ]
