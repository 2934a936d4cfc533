from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from shardflip.core.logger import get_logger
from shardflip.core.security import current_identity

logger = get_logger("admin")

router = APIRouter()


# Request models
class AmountRequest(BaseModel):
    amount: int = Field(..., ge=0)


class TransferOwnershipRequest(BaseModel):
    new_owner: str


@router.get("/status")
async def ledger_status(request: Request):
    return asdict(request.app.state.ledger.status())


@router.post("/deposit")
async def deposit(request: Request, data: AmountRequest, caller: str = Depends(current_identity)):
    """Fund the pool from the caller's wallet. Open to any authenticated caller."""
    ledger = request.app.state.ledger
    wallets = request.app.state.wallets

    with wallets.attach(caller, data.amount):
        pool_balance = ledger.deposit_funds(caller, data.amount)

    if caller != ledger.owner:
        logger.warning(f"Non-owner deposit of {data.amount} by {caller}")
    return {"success": True, "pool_balance": pool_balance}


@router.post("/withdraw")
async def withdraw(request: Request, data: AmountRequest, caller: str = Depends(current_identity)):
    pool_balance = request.app.state.ledger.withdraw_funds(caller, data.amount)
    return {"success": True, "pool_balance": pool_balance}


@router.post("/emergency-withdraw")
async def emergency_withdraw(request: Request, caller: str = Depends(current_identity)):
    amount = request.app.state.ledger.emergency_withdraw(caller)
    return {"success": True, "amount": amount, "pool_balance": 0}


@router.post("/pause")
async def pause(request: Request, caller: str = Depends(current_identity)):
    changed = request.app.state.ledger.pause(caller)
    return {"success": True, "paused": True, "changed": changed}


@router.post("/unpause")
async def unpause(request: Request, caller: str = Depends(current_identity)):
    changed = request.app.state.ledger.unpause(caller)
    return {"success": True, "paused": False, "changed": changed}


@router.post("/transfer-ownership")
async def transfer_ownership(
    request: Request, data: TransferOwnershipRequest, caller: str = Depends(current_identity)
):
    owner = request.app.state.ledger.transfer_ownership(caller, data.new_owner)
    return {"success": True, "owner": owner}


@router.post("/rotate-seed")
async def rotate_seed(request: Request, caller: str = Depends(current_identity)):
    """Reveal the retired server seed so past outcomes can be verified."""
    return request.app.state.ledger.rotate_seed(caller)
