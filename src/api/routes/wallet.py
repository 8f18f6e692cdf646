# src/api/routes/wallet.py
"""
HTTP маршруты кошелька.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_admin, get_ledger, get_principal
from src.api.schemas import BonusRequest, ReproducibilityResponse, TransferRequest, TransferResponse
from src.core.ledger import LedgerEntry, LedgerService, TransferResult, WalletAccount
from src.shared.models.common import PaginationParams, Principal

router = APIRouter(prefix="/wallet", tags=["Wallet"])


def _transfer_response(result: TransferResult) -> TransferResponse:
    return TransferResponse(
        reference=result.reference,
        replayed=result.replayed,
        amount=result.entry.amount,
        balance=result.entry.sender_balance_after,
        entry=result.entry,
    )


@router.get("/me", response_model=WalletAccount, summary="Мой кошелёк")
async def get_my_wallet(
    principal: Principal = Depends(get_principal),
    ledger: LedgerService = Depends(get_ledger),
) -> WalletAccount:
    return await ledger.get_account(principal.user_id)


@router.post("/me", response_model=WalletAccount, summary="Открыть кошелёк")
async def open_my_wallet(
    principal: Principal = Depends(get_principal),
    ledger: LedgerService = Depends(get_ledger),
) -> WalletAccount:
    return await ledger.open_account(principal.user_id)


@router.get("/me/history", response_model=list[LedgerEntry], summary="История проводок")
async def get_my_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    ledger: LedgerService = Depends(get_ledger),
) -> list[LedgerEntry]:
    pagination = PaginationParams(page=page, page_size=page_size)
    return await ledger.get_history(principal.user_id, limit=pagination.limit, offset=pagination.offset)


@router.get("/me/verify", response_model=ReproducibilityResponse, summary="Сверка баланса с историей")
async def verify_my_wallet(
    principal: Principal = Depends(get_principal),
    ledger: LedgerService = Depends(get_ledger),
) -> ReproducibilityResponse:
    report = await ledger.verify_reproducibility(principal.user_id)
    return ReproducibilityResponse(
        user_id=report.user_id,
        ok=report.ok,
        expected_balance=report.expected_balance,
        actual_balance=report.actual_balance,
        entries_count=report.entries_count,
    )


@router.post("/transfers", response_model=TransferResponse, summary="Перевод")
async def create_transfer(
    request: TransferRequest,
    principal: Principal = Depends(get_principal),
    ledger: LedgerService = Depends(get_ledger),
) -> TransferResponse:
    result = await ledger.transfer_to_identifier(
        principal.user_id,
        request.receiver_identifier,
        request.amount,
        idempotency_key=request.idempotency_key,
        description=request.description,
    )
    return _transfer_response(result)


@router.post("/bonus", response_model=TransferResponse, summary="Начислить бонус (админ)")
async def credit_bonus(
    request: BonusRequest,
    admin: Principal = Depends(get_admin),
    ledger: LedgerService = Depends(get_ledger),
) -> TransferResponse:
    result = await ledger.credit_bonus(
        request.user_id,
        request.amount,
        idempotency_key=request.idempotency_key,
        description=request.description,
    )
    return _transfer_response(result)


@router.post("/{user_id}/block", response_model=WalletAccount, summary="Заблокировать кошелёк (админ)")
async def block_wallet(
    user_id: int,
    admin: Principal = Depends(get_admin),
    ledger: LedgerService = Depends(get_ledger),
) -> WalletAccount:
    return await ledger.block_account(user_id)


@router.post("/{user_id}/unblock", response_model=WalletAccount, summary="Разблокировать кошелёк (админ)")
async def unblock_wallet(
    user_id: int,
    admin: Principal = Depends(get_admin),
    ledger: LedgerService = Depends(get_ledger),
) -> WalletAccount:
    return await ledger.unblock_account(user_id)
