"""
Error taxonomy for the betting ledger.

Every failure carries a stable ``code`` so callers can branch on it without
parsing messages, and a ``category`` the HTTP layer maps to a status code.

Usage:
    try:
        ledger.place_bet(player, stake, CoinSide.HEADS, attached_value=stake)
    except LedgerError as e:
        if e.code == BET_TOO_LOW:
            ...
"""

# Validation
BET_TOO_LOW = "bet_too_low"
BET_TOO_HIGH = "bet_too_high"
PAYMENT_NOT_ATTACHED = "payment_not_attached"
INVALID_SIDE = "invalid_side"
INVALID_AMOUNT = "invalid_amount"

# Liquidity
INSUFFICIENT_POOL_LIQUIDITY = "insufficient_pool_liquidity"
INSUFFICIENT_POOL_BALANCE = "insufficient_pool_balance"

# Authorization
NOT_OWNER = "not_owner"
INVALID_OWNER = "invalid_owner"
REENTRANT_CALL = "reentrant_call"

# Availability
PAUSED = "paused"

# Transfers
TRANSFER_FAILED = "transfer_failed"
INSUFFICIENT_WALLET_FUNDS = "insufficient_wallet_funds"

# Lookups
GAME_NOT_FOUND = "game_not_found"
UNSUPPORTED = "unsupported_operation"

# Mirror ingestion
INVALID_EVENT = "invalid_event"


class LedgerError(Exception):
    """Base class for every rejected ledger operation. No state was changed."""

    category = "ledger"
    code = "ledger_error"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ValidationError(LedgerError):
    category = "validation"
    code = "validation_error"


class LiquidityError(LedgerError):
    category = "liquidity"
    code = INSUFFICIENT_POOL_LIQUIDITY


class AuthorizationError(LedgerError):
    category = "authorization"
    code = NOT_OWNER


class AvailabilityError(LedgerError):
    category = "availability"
    code = PAUSED


class TransferError(LedgerError):
    """A payout or withdrawal could not be delivered."""

    category = "transfer"
    code = TRANSFER_FAILED


class NotFoundError(LedgerError):
    category = "not_found"
    code = GAME_NOT_FOUND


class ReentrancyError(LedgerError):
    """A mutating call arrived while another mutation was still in flight."""

    category = "conflict"
    code = REENTRANT_CALL
