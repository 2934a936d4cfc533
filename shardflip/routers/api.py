from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from shardflip.config import settings
from shardflip.core.logger import get_logger
from shardflip.core.models import CoinSide
from shardflip.core.security import current_identity

logger = get_logger("api")

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


# ==================== Request Models ====================

class FlipRequest(BaseModel):
    stake: int = Field(..., ge=0)
    choice: str
    value: Optional[int] = Field(None, ge=0)  # Attached value; defaults to the stake


# ==================== Helpers ====================

def get_game_rate_limit() -> str:
    """Rate limit string for flips, from config."""
    return settings.rate_limit.game_requests if settings.rate_limit.enabled else "1000/minute"


def get_api_rate_limit() -> str:
    return settings.rate_limit.api_requests if settings.rate_limit.enabled else "1000/minute"


def game_view(game) -> dict:
    return game.to_dict()


# ==================== Betting ====================

@router.post("/flip")
@limiter.limit(get_game_rate_limit)
async def flip(request: Request, data: FlipRequest, player: str = Depends(current_identity)):
    """Attach the stake from the caller's wallet and settle one flip."""
    ledger = request.app.state.ledger
    wallets = request.app.state.wallets

    side = CoinSide.parse(data.choice)
    value = data.stake if data.value is None else data.value

    # A rejected bet raises out of attach(), which hands the value back
    with wallets.attach(player, value):
        game = ledger.place_bet(player, data.stake, side, attached_value=value)

    return {**game_view(game), "wallet_balance": wallets.balance(player)}


# ==================== Player Views ====================

@router.get("/players/{address}/stats")
@limiter.limit(get_api_rate_limit)
async def player_stats(request: Request, address: str):
    record = request.app.state.ledger.get_player_stats(address)
    return {"address": address.lower(), **record.to_dict()}


@router.get("/players/{address}/games")
@limiter.limit(get_api_rate_limit)
async def player_games(request: Request, address: str, limit: int = 10):
    games = request.app.state.ledger.get_player_games(address, limit)
    return {"address": address.lower(), "games": [game_view(g) for g in games]}


@router.get("/players/{address}/played")
@limiter.limit(get_api_rate_limit)
async def player_played(request: Request, address: str):
    return {"address": address.lower(), "played": request.app.state.ledger.has_player_played(address)}


@router.get("/wallet")
async def wallet_balance(request: Request, player: str = Depends(current_identity)):
    return {"address": player, "balance": request.app.state.wallets.balance(player)}


# ==================== Game Views ====================

@router.get("/games/recent")
@limiter.limit(get_api_rate_limit)
async def recent_games(request: Request, limit: Optional[int] = None):
    games = request.app.state.ledger.get_recent_games(limit)
    return {"games": [game_view(g) for g in games]}


@router.get("/games/count")
async def total_games(request: Request):
    return {"total_games": request.app.state.ledger.get_total_games()}


@router.get("/games/{index}")
@limiter.limit(get_api_rate_limit)
async def game_by_index(request: Request, index: int):
    return game_view(request.app.state.ledger.get_game_by_index(index))


@router.get("/stats")
@limiter.limit(get_api_rate_limit)
async def game_stats(request: Request):
    ledger = request.app.state.ledger
    return {**asdict(ledger.get_game_stats()), "pool_balance": ledger.pool_balance}


@router.get("/leaderboard")
@limiter.limit(get_api_rate_limit)
async def leaderboard(request: Request, limit: int = 10):
    entries = request.app.state.ledger.get_top_players(limit)
    return {"leaderboard": [asdict(e) for e in entries]}


@router.get("/fairness")
async def fairness(request: Request):
    """Current seed commitment; null when outcomes come from the CSPRNG."""
    ledger = request.app.state.ledger
    return {
        "source": type(ledger.coin_source).__name__,
        "commitment": getattr(ledger.coin_source, "commitment", None),
        "next_nonce": ledger.get_total_games(),
    }


@router.get("/health")
async def health(request: Request):
    ledger = request.app.state.ledger
    return {
        "status": "ok",
        "paused": ledger.paused,
        "total_games": ledger.get_total_games(),
    }
