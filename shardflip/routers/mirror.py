"""
Read-model endpoints backed by the StatsMirror.
Writes require the shared X-API-Key; reads are public and cached.
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PayloadError, model_validator

from shardflip.core.events import EventKind, GamePlayed, event_from_dict
from shardflip.core.exceptions import ValidationError, INVALID_EVENT
from shardflip.core.logger import get_logger
from shardflip.core.mirror import LEADERBOARD_FIELDS, USER_SORT_FIELDS
from shardflip.core.models import CoinSide
from shardflip.core.security import require_api_key

logger = get_logger("mirror.api")

router = APIRouter()


class RegisterWalletRequest(BaseModel):
    wallet_address: str


class GamePlayedPayload(BaseModel):
    """A settlement reported from outside the process. Amounts must be JSON integers."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["game_played"]
    player: str = Field(..., min_length=1)
    bet_amount: int = Field(..., ge=0, strict=True)
    chosen_side: CoinSide
    result_side: CoinSide
    won: bool = Field(..., strict=True)
    payout: int = Field(..., ge=0, strict=True)
    timestamp: int = Field(..., ge=0, strict=True)
    index: int = Field(..., ge=0, strict=True)

    @model_validator(mode="after")
    def check_outcome(self):
        if self.won != (self.chosen_side == self.result_side):
            raise ValueError("won does not match chosen_side and result_side")
        if not self.won and self.payout != 0:
            raise ValueError("a lost game cannot pay out")
        return self

    def to_event(self) -> GamePlayed:
        return GamePlayed(
            player=self.player,
            bet_amount=self.bet_amount,
            chosen_side=self.chosen_side,
            result_side=self.result_side,
            won=self.won,
            payout=self.payout,
            timestamp=self.timestamp,
            index=self.index,
        )


def get_mirror(request: Request):
    mirror = getattr(request.app.state, "mirror", None)
    if mirror is None:
        raise HTTPException(status_code=503, detail="Stats mirror is disabled")
    return mirror


def parse_event(payload: dict, payout_multiplier: int):
    """Turn an ingested payload into an event, or raise ValidationError(INVALID_EVENT)."""
    if payload.get("type") != EventKind.GAME_PLAYED.value:
        try:
            return event_from_dict(payload)
        except ValueError as e:
            raise ValidationError(str(e), code=INVALID_EVENT) from e

    try:
        game = GamePlayedPayload.model_validate(payload)
    except PayloadError as e:
        error = e.errors()[0]
        location = ".".join(str(part) for part in error["loc"]) or "event"
        raise ValidationError(f"{location}: {error['msg']}", code=INVALID_EVENT) from e

    if game.won and game.payout != game.bet_amount * payout_multiplier:
        raise ValidationError(
            f"payout {game.payout} does not match {payout_multiplier}x the stake",
            code=INVALID_EVENT,
        )
    return game.to_event()


@router.post("/events", dependencies=[Depends(require_api_key)])
async def ingest_event(request: Request, payload: dict, mirror=Depends(get_mirror)):
    """Apply one event. Redelivering an event is harmless and reports applied=False."""
    event = parse_event(payload, request.app.state.ledger.payout_multiplier)
    return {"success": True, "applied": mirror.apply(event)}


@router.post("/users", dependencies=[Depends(require_api_key)])
async def register_wallet(data: RegisterWalletRequest, mirror=Depends(get_mirror)):
    if not data.wallet_address.strip():
        raise HTTPException(status_code=400, detail="Wallet address is required")
    user, created = mirror.register(data.wallet_address)
    message = "Wallet registered successfully" if created else "Wallet already registered"
    return {"success": True, "message": message, "user": user}


@router.get("/users")
async def list_users(
    page: int = 1,
    limit: int = 50,
    sort_by: str = "registered_at",
    order: Literal["asc", "desc"] = "desc",
    mirror=Depends(get_mirror),
):
    if sort_by not in USER_SORT_FIELDS:
        raise HTTPException(
            status_code=400,
            detail=f"sort_by must be one of: {', '.join(USER_SORT_FIELDS)}",
        )
    page = max(1, page)
    limit = max(1, min(limit, 100))
    return {"success": True, **mirror.list_users(page, limit, sort_by, order)}


@router.get("/users/{address}")
async def get_user(address: str, mirror=Depends(get_mirror)):
    user = mirror.get_user(address)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "user": user}


@router.get("/leaderboard")
async def leaderboard(type: str = "wins", limit: int = 20, mirror=Depends(get_mirror)):
    if type not in LEADERBOARD_FIELDS:
        raise HTTPException(
            status_code=400,
            detail=f"type must be one of: {', '.join(LEADERBOARD_FIELDS)}",
        )
    limit = max(1, min(limit, 100))
    return {"success": True, "type": type, "leaderboard": mirror.leaderboard(type, limit)}


@router.get("/stats")
async def stats(mirror=Depends(get_mirror)):
    return {"success": True, "stats": mirror.stats()}
