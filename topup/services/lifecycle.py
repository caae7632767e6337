"""Transaction state machine.

Every status change goes through :class:`TransactionLifecycle`. Transitions
follow ``ALLOWED_TRANSITIONS`` and are written as a compare-and-set against the
store, so a terminal status reached by one request is never overwritten by a
stale concurrent one.
"""
import logging
import math
import secrets
import string
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from topup.dto.payment import QrisPayment
from topup.models.transaction import Transaction
from topup.repositories.transaction_repository import TransactionRepository
from topup.utils.enums import TransactionStatus, can_transition, sources_for
from topup.utils.errors import InvalidStateError, NotFoundError, ValidationError
from topup.utils.time import utcnow

logger = logging.getLogger(__name__)

_REFERENCE_ALPHABET = string.digits + string.ascii_uppercase

_STATUS_FIELDS = ("status", "transaction_status", "payment_status")
_SUCCESS_VALUES = frozenset({"success", "succeeded", "paid", "settlement", "settled", "completed"})
_FAILURE_VALUES = frozenset({"failed", "failure", "expired", "cancelled", "canceled", "deny", "denied", "rejected"})

SuccessHook = Callable[[Transaction], Awaitable[None]]


class PaymentProvider(Protocol):
    async def create_qris_payment(
        self,
        *,
        reference_id: str,
        amount: int,
        payer_label: str,
        quantity_label: str | int,
        description: str | None = None,
    ) -> QrisPayment: ...


@dataclass(frozen=True)
class PaymentInitiation:
    reference_id: str
    transaction_id: int
    qris: QrisPayment


def generate_merchant_reference() -> str:
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(8))
    return f"TRX-{time.time_ns() // 1_000_000}-{suffix}"


def resolve_webhook_status(payload: Mapping[str, Any]) -> TransactionStatus | None:
    """Map a provider notification to the local status it implies.

    A notification without any status field is a completed payment: the provider
    only calls back once the payer has paid. Unrecognised values (``pending`` and
    the like) imply no change.
    """
    for field in _STATUS_FIELDS:
        value = payload.get(field)
        if value is None:
            continue
        normalized = str(value).strip().lower()
        if normalized in _SUCCESS_VALUES:
            return TransactionStatus.SUCCESS
        if normalized in _FAILURE_VALUES:
            return TransactionStatus.FAILED
        return None
    return TransactionStatus.SUCCESS


async def log_fulfillment(transaction: Transaction) -> None:
    logger.info(
        "Fulfillment released. transaction_id=%s merchant_transaction_id=%s target_id=%s total_diamond=%s",
        transaction.id,
        transaction.merchant_transaction_id,
        transaction.target_id,
        transaction.total_diamond,
    )


class TransactionLifecycle:
    def __init__(
        self,
        repository: TransactionRepository,
        provider: PaymentProvider | None = None,
        on_success: SuccessHook | None = None,
    ):
        self.repository = repository
        self.provider = provider
        self.on_success = on_success or log_fulfillment

    async def create(self, *, total_diamond: int, total_amount: int, no_wa: str, target_id: int) -> Transaction:
        transaction = await self.repository.create(
            merchant_transaction_id=generate_merchant_reference(),
            total_diamond=total_diamond,
            total_amount=total_amount,
            no_wa=no_wa,
            target_id=target_id,
        )
        logger.info(
            "Transaction created. transaction_id=%s merchant_transaction_id=%s",
            transaction.id,
            transaction.merchant_transaction_id,
        )
        return transaction

    async def get(self, transaction_id: int) -> Transaction:
        transaction = await self.repository.get_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError()
        return transaction

    async def list_transactions(
        self, *, page: int, limit: int, status: TransactionStatus | None = None
    ) -> tuple[list[Transaction], int, int]:
        transactions, total = await self.repository.list_page(offset=(page - 1) * limit, limit=limit, status=status)
        return transactions, total, math.ceil(total / limit)

    async def initiate_payment(self, transaction_id: int) -> PaymentInitiation:
        if self.provider is None:
            raise RuntimeError("initiate_payment requires a payment provider")
        transaction = await self.get(transaction_id)
        if transaction.status == TransactionStatus.SUCCESS:
            raise InvalidStateError("Transaction already completed")
        if transaction.status == TransactionStatus.FAILED:
            raise InvalidStateError("Transaction already failed")

        reference_id = transaction.merchant_transaction_id
        # Hand the connection back to the pool while the provider call is in flight.
        await self.repository.end_read()
        qris = await self.provider.create_qris_payment(
            reference_id=reference_id,
            amount=transaction.total_amount,
            payer_label=transaction.no_wa,
            quantity_label=transaction.total_diamond,
            description=f"Top Up {transaction.total_diamond} Diamonds",
        )

        if transaction.status == TransactionStatus.PENDING:
            # Losing this race to a webhook is fine: the row has already moved past pending.
            await self._transition(transaction, TransactionStatus.PROCESSING)
        return PaymentInitiation(reference_id=reference_id, transaction_id=transaction.id, qris=qris)

    async def apply_webhook_event(self, merchant_transaction_id: str, payload: Mapping[str, Any]) -> Transaction:
        transaction = await self.repository.get_by_merchant_transaction_id(merchant_transaction_id)
        if transaction is None:
            raise NotFoundError()
        if transaction.status.is_terminal:
            logger.info(
                "Ignoring webhook for terminal transaction. merchant_transaction_id=%s status=%s",
                merchant_transaction_id,
                transaction.status,
            )
            return transaction

        target = resolve_webhook_status(payload)
        if target is None or target == transaction.status:
            logger.info(
                "Webhook implies no status change. merchant_transaction_id=%s status=%s",
                merchant_transaction_id,
                transaction.status,
            )
            return transaction

        moved, current = await self._transition(transaction, target)
        if not moved:
            logger.info(
                "Webhook lost race to a concurrent update. merchant_transaction_id=%s status=%s",
                merchant_transaction_id,
                current.status,
            )
        return current

    async def check_status(self, merchant_transaction_id: str, no_wa: str) -> Transaction:
        transaction = await self.repository.get_by_merchant_transaction_id(merchant_transaction_id)
        # Same error for unknown and foreign references so existence is not disclosed.
        if transaction is None or transaction.no_wa != no_wa:
            raise NotFoundError()
        return transaction

    async def update_status_by_reference(
        self, merchant_transaction_id: str | None, new_status: TransactionStatus
    ) -> Transaction:
        if not merchant_transaction_id or not merchant_transaction_id.strip():
            raise ValidationError("merchant_transaction_id is required")
        transaction = await self.repository.get_by_merchant_transaction_id(merchant_transaction_id.strip())
        if transaction is None:
            raise NotFoundError()
        return await self._admin_update(transaction, new_status)

    async def update_status(self, transaction_id: int, new_status: TransactionStatus) -> Transaction:
        return await self._admin_update(await self.get(transaction_id), new_status)

    async def _admin_update(self, transaction: Transaction, new_status: TransactionStatus) -> Transaction:
        if transaction.status == new_status:
            raise ValidationError(f"Transaction status is already {new_status}")
        if not can_transition(transaction.status, new_status):
            raise InvalidStateError(f"Cannot change status from {transaction.status} to {new_status}")
        moved, current = await self._transition(transaction, new_status, expected={transaction.status})
        if not moved:
            raise InvalidStateError(f"Transaction status changed concurrently to {current.status}")
        return current

    async def _transition(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        *,
        expected: set[TransactionStatus] | frozenset[TransactionStatus] | None = None,
    ) -> tuple[bool, Transaction]:
        previous = transaction.status
        moved = await self.repository.compare_and_set_status(
            transaction.id,
            expected=expected if expected is not None else sources_for(target),
            new_status=target,
            now=utcnow(),
        )
        current = await self.repository.get_by_id(transaction.id)
        if current is None:
            raise NotFoundError()
        if moved:
            logger.info(
                "Transaction status changed. merchant_transaction_id=%s from=%s to=%s",
                current.merchant_transaction_id,
                previous,
                target,
            )
            if target == TransactionStatus.SUCCESS:
                # Only the writer that won the compare-and-set gets here, once per transaction.
                await self._release_fulfillment(current)
        return moved, current

    async def _release_fulfillment(self, transaction: Transaction) -> None:
        # The status is already committed, so a hook failure must not fail the request.
        try:
            await self.on_success(transaction)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Fulfillment hook failed. transaction_id=%s merchant_transaction_id=%s",
                transaction.id,
                transaction.merchant_transaction_id,
            )
