from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.core.cache import TTLCache
from app.core.chains import get_solana_client, get_tron_client
from app.core.deps import require_admin
from app.models.sweep import SweepStatus
from app.models.user import User
from app.routers.payments import payment_to_dict
from app.schemas.payment import SolanaSweepRequest, TronSweepRequest
from app.services.address_balances import get_balance_cache, list_deposit_addresses
from app.services.deposit_addresses import generate_missing_addresses
from app.services.hd_wallet import SOLANA, TRON
from app.services.solana import SolanaClient
from app.services.sweeps import SweepResult, list_sweeps, sweep_solana, sweep_to_dict, sweep_tron
from app.services.tron import TronClient
from app.services.withdrawals import reject_withdrawal

router = APIRouter(prefix="/api/payments/admin", tags=["admin"])


def _sweep_response(result: SweepResult) -> dict:
    return {
        "success": True,
        "message": "Sweep already recorded" if result.already_recorded else "Sweep confirmed",
        **sweep_to_dict(result.sweep),
    }


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

@router.post("/solana/sweep")
async def solana_sweep(
    body: SolanaSweepRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    solana: SolanaClient = Depends(get_solana_client),
):
    result = await sweep_solana(
        db, admin, solana,
        user_id=body.user_id, index=body.index, mint=body.mint,
        amount_ui=body.amount_ui, to_address=body.to_address,
    )
    return _sweep_response(result)


@router.post("/tron/sweep")
async def tron_sweep(
    body: TronSweepRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    tron: TronClient = Depends(get_tron_client),
):
    result = await sweep_tron(
        db, admin, tron, body.symbol,
        user_id=body.user_id, index=body.index, amount_ui=body.amount_ui,
    )
    return _sweep_response(result)


@router.get("/solana/sweeps")
async def solana_sweeps(
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    user_id: Optional[int] = Query(None, alias="userId"),
    status: Optional[SweepStatus] = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await list_sweeps(db, SOLANA, page=page, limit=limit, user_id=user_id, status=status)


@router.get("/tron/sweeps")
async def tron_sweeps(
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    user_id: Optional[int] = Query(None, alias="userId"),
    status: Optional[SweepStatus] = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await list_sweeps(db, TRON, page=page, limit=limit, user_id=user_id, status=status)


# ---------------------------------------------------------------------------
# Deposit addresses
# ---------------------------------------------------------------------------

@router.get("/solana/deposit-addresses")
async def solana_deposit_addresses(
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    search: Optional[str] = None,
    refresh: bool = False,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    solana: SolanaClient = Depends(get_solana_client),
    cache: TTLCache = Depends(get_balance_cache),
):
    return await list_deposit_addresses(db, SOLANA, solana, cache, page=page, limit=limit, search=search, refresh=refresh)


@router.get("/tron/deposit-addresses")
async def tron_deposit_addresses(
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    search: Optional[str] = None,
    refresh: bool = False,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    tron: TronClient = Depends(get_tron_client),
    cache: TTLCache = Depends(get_balance_cache),
):
    return await list_deposit_addresses(db, TRON, tron, cache, page=page, limit=limit, search=search, refresh=refresh)


@router.post("/solana/generate-all-addresses")
async def generate_all_solana_addresses(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    """Allocate Solana deposit addresses for every active user that has none."""
    return await generate_missing_addresses(db, SOLANA)


@router.post("/tron/generate-all-addresses")
async def generate_all_tron_addresses(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return await generate_missing_addresses(db, TRON)


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

@router.post("/withdrawals/{payment_id}/reject")
async def reject(payment_id: int, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    payment = await reject_withdrawal(db, payment_id)
    return {"message": "Withdrawal rejected", "payment": payment_to_dict(payment)}
