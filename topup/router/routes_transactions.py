from fastapi import APIRouter, Depends, Query, status

from topup.dto.payment import PaymentInitiationOut
from topup.dto.transaction import (
    MerchantStatusUpdateIn,
    Pagination,
    TransactionCreateIn,
    TransactionEnvelope,
    TransactionOut,
    TransactionPage,
    TransactionStatusOut,
    TransactionStatusUpdateIn,
)
from topup.router.deps import db_bound, get_lifecycle
from topup.services.lifecycle import TransactionLifecycle
from topup.utils.enums import TransactionStatus
from topup.utils.errors import ValidationError
from topup.utils.security import require_admin

router = APIRouter(prefix="/api/transactions", tags=["transactions"])


@router.post("", response_model=TransactionOut, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    payload: TransactionCreateIn, lifecycle: TransactionLifecycle = Depends(get_lifecycle)
) -> TransactionOut:
    transaction = await db_bound(lifecycle.create(**payload.model_dump()))
    return TransactionOut.model_validate(transaction)


@router.get("", response_model=TransactionPage, dependencies=[Depends(require_admin)])
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: TransactionStatus | None = Query(None, alias="status"),
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
) -> TransactionPage:
    transactions, total, total_pages = await db_bound(
        lifecycle.list_transactions(page=page, limit=limit, status=status_filter)
    )
    return TransactionPage(
        transactions=[TransactionOut.model_validate(txn) for txn in transactions],
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=total_pages),
    )


@router.get("/status", response_model=TransactionStatusOut)
async def check_transaction_status(
    merchant_transaction_id: str = Query(min_length=1),
    no_wa: str = Query(min_length=1),
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
) -> TransactionStatusOut:
    transaction = await db_bound(lifecycle.check_status(merchant_transaction_id.strip(), no_wa.strip()))
    return TransactionStatusOut(status=transaction.status, transaction=TransactionOut.model_validate(transaction))


@router.put("/merchant/status", response_model=TransactionOut, dependencies=[Depends(require_admin)])
async def update_status_by_merchant_reference(
    payload: MerchantStatusUpdateIn, lifecycle: TransactionLifecycle = Depends(get_lifecycle)
) -> TransactionOut:
    transaction = await db_bound(
        lifecycle.update_status_by_reference(payload.merchant_transaction_id, payload.status)
    )
    return TransactionOut.model_validate(transaction)


@router.get("/{transaction_id:int}", response_model=TransactionEnvelope)
async def get_transaction(
    transaction_id: int, lifecycle: TransactionLifecycle = Depends(get_lifecycle)
) -> TransactionEnvelope:
    transaction = await db_bound(lifecycle.get(transaction_id))
    return TransactionEnvelope(transaction=TransactionOut.model_validate(transaction))


@router.put("/{transaction_id:int}", response_model=TransactionOut, dependencies=[Depends(require_admin)])
async def update_transaction_status(
    transaction_id: int,
    payload: TransactionStatusUpdateIn,
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
) -> TransactionOut:
    transaction = await db_bound(lifecycle.update_status(transaction_id, payload.status))
    return TransactionOut.model_validate(transaction)


@router.post("/{transaction_id}/pay/qris", response_model=PaymentInitiationOut)
async def initiate_qris_payment(
    transaction_id: str, lifecycle: TransactionLifecycle = Depends(get_lifecycle)
) -> PaymentInitiationOut:
    try:
        trx_id = int(transaction_id)
    except ValueError as exc:
        raise ValidationError("Invalid transaction id") from exc

    initiation = await db_bound(lifecycle.initiate_payment(trx_id), bounded=False)
    return PaymentInitiationOut(
        reference_id=initiation.reference_id,
        transaction_id=initiation.transaction_id,
        qris=initiation.qris,
    )
