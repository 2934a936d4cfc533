"""
Native balances of players and the owner.

The ledger never touches these directly: stakes arrive as value attached to a
call (``attach``) and payouts leave through ``send``. Frozen accounts reject
incoming transfers, which is how a failed payout looks from the ledger's side.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Set

from shardflip.core.exceptions import (
    TransferError,
    ValidationError,
    INSUFFICIENT_WALLET_FUNDS,
    INVALID_AMOUNT,
)
from shardflip.core.logger import get_logger

logger = get_logger("wallets")


class WalletBook:
    def __init__(self, starting_balance: int = 0):
        self.starting_balance = starting_balance
        self._balances: Dict[str, int] = {}
        self._frozen: Set[str] = set()
        self._lock = threading.RLock()

    @staticmethod
    def normalize(address: str) -> str:
        return address.strip().lower()

    def _account(self, address: str) -> str:
        address = self.normalize(address)
        if address not in self._balances:
            self._balances[address] = self.starting_balance
        return address

    def balance(self, address: str) -> int:
        with self._lock:
            return self._balances[self._account(address)]

    def credit(self, address: str, amount: int) -> int:
        with self._lock:
            address = self._account(address)
            self._balances[address] += amount
            return self._balances[address]

    def debit(self, address: str, amount: int) -> int:
        if amount < 0:
            raise ValidationError("Amount must not be negative", code=INVALID_AMOUNT)
        with self._lock:
            address = self._account(address)
            if self._balances[address] < amount:
                raise ValidationError(
                    f"Wallet {address} cannot cover {amount}",
                    code=INSUFFICIENT_WALLET_FUNDS,
                )
            self._balances[address] -= amount
            return self._balances[address]

    def freeze(self, address: str):
        with self._lock:
            self._frozen.add(self._account(address))

    def unfreeze(self, address: str):
        with self._lock:
            self._frozen.discard(self.normalize(address))

    def send(self, recipient: str, amount: int):
        """Deliver ``amount`` to ``recipient``. Raises TransferError if it cannot land."""
        with self._lock:
            recipient = self._account(recipient)
            if recipient in self._frozen:
                raise TransferError(f"Transfer of {amount} to {recipient} was rejected")
            self._balances[recipient] += amount
        logger.debug("Transfer delivered", extra={"recipient": recipient, "amount": amount})

    @contextmanager
    def attach(self, sender: str, amount: int):
        """
        Take ``amount`` from ``sender`` for the duration of one call.

        If the block raises, the value goes back to the sender, the same way a
        reverted transaction returns its attached value.
        """
        self.debit(sender, amount)
        try:
            yield amount
        except BaseException:
            self.credit(sender, amount)
            raise
