import hashlib
import hmac
import secrets
import threading
from typing import Optional

from shardflip.core.models import CoinSide


class SecureCoinSource:
    """
    Coin outcomes from Python's `secrets` module: cryptographically strong and
    unavailable to the bettor before settlement.
    """

    commitment = None

    def draw(self, player: str, nonce: int) -> CoinSide:
        return CoinSide.HEADS if secrets.randbelow(2) == 0 else CoinSide.TAILS


def derive_side(server_seed: str, client_seed: str, nonce: int) -> CoinSide:
    """Low bit of sha256(server_seed:client_seed:nonce) picks the side."""
    digest = hashlib.sha256(f"{server_seed}:{client_seed}:{nonce}".encode("utf-8")).digest()
    return CoinSide.HEADS if digest[-1] & 1 == 0 else CoinSide.TAILS


def commit(server_seed: str) -> str:
    return hashlib.sha256(server_seed.encode("utf-8")).hexdigest()


class CommitRevealCoinSource:
    """
    Provably fair outcomes.

    The hash of the current server seed is published (``commitment``) before
    any bet it decides. Each outcome mixes that seed with the player's identity
    and the game index, so neither side can steer it. ``rotate()`` reveals the
    retired seed; with it anyone can re-derive every outcome via ``verify()``.
    """

    def __init__(self, server_seed: Optional[str] = None):
        self._lock = threading.Lock()
        self._server_seed = server_seed or secrets.token_hex(32)
        self.commitment = commit(self._server_seed)

    def draw(self, player: str, nonce: int) -> CoinSide:
        with self._lock:
            return derive_side(self._server_seed, player, nonce)

    def rotate(self) -> dict:
        """Retire the current seed and commit to a fresh one."""
        with self._lock:
            revealed = {"server_seed": self._server_seed, "commitment": self.commitment}
            self._server_seed = secrets.token_hex(32)
            self.commitment = commit(self._server_seed)
        revealed["next_commitment"] = self.commitment
        return revealed

    @staticmethod
    def verify(
        server_seed: str, commitment: str, player: str, nonce: int, result: CoinSide
    ) -> bool:
        if not hmac.compare_digest(commit(server_seed), commitment):
            return False
        return derive_side(server_seed, player, nonce) == CoinSide.parse(result)


def build_coin_source(kind: str):
    """Factory used by the app wiring; ``kind`` comes from ``ledger.randomness``."""
    if kind == "secure":
        return SecureCoinSource()
    if kind == "commit_reveal":
        return CommitRevealCoinSource()
    raise ValueError(f"Unknown randomness source: {kind!r}")
