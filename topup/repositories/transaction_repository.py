from collections.abc import Collection
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from topup.models.transaction import Transaction
from topup.utils.enums import TransactionStatus
from topup.utils.errors import PersistenceError


class TransactionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        merchant_transaction_id: str,
        total_diamond: int,
        total_amount: int,
        no_wa: str,
        target_id: int,
    ) -> Transaction:
        transaction = Transaction(
            merchant_transaction_id=merchant_transaction_id,
            total_diamond=total_diamond,
            total_amount=total_amount,
            no_wa=no_wa,
            target_id=target_id,
            status=TransactionStatus.PENDING,
        )
        self.db.add(transaction)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise PersistenceError(
                f"merchant_transaction_id {merchant_transaction_id} already exists"
            ) from exc
        # Server-side timestamps are only known after a reload.
        await self.db.refresh(transaction)
        return transaction

    async def get_by_id(self, transaction_id: int) -> Transaction | None:
        return (await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()

    async def get_by_merchant_transaction_id(self, merchant_transaction_id: str) -> Transaction | None:
        return (await self.db.execute(
            select(Transaction)
            .where(Transaction.merchant_transaction_id == merchant_transaction_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()

    async def end_read(self) -> None:
        await self.db.commit()

    async def list_page(
        self, *, offset: int, limit: int, status: TransactionStatus | None = None
    ) -> tuple[list[Transaction], int]:
        query = select(Transaction)
        count_query = select(func.count()).select_from(Transaction)
        if status is not None:
            query = query.where(Transaction.status == status)
            count_query = count_query.where(Transaction.status == status)
        rows = (await self.db.execute(
            query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).offset(offset).limit(limit)
        )).scalars().all()
        total = (await self.db.execute(count_query)).scalar_one()
        return list(rows), total

    async def compare_and_set_status(
        self,
        transaction_id: int,
        *,
        expected: Collection[TransactionStatus],
        new_status: TransactionStatus,
        now: datetime,
    ) -> bool:
        # Single conditional UPDATE: only one concurrent writer can move a row out of ``expected``.
        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status.in_(list(expected)))
            .values(status=new_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1
