import asyncio

import pytest

from topup.dto.payment import QrisPayment
from topup.repositories.transaction_repository import TransactionRepository
from topup.services.lifecycle import TransactionLifecycle, resolve_webhook_status
from topup.utils import db as db_core
from topup.utils.enums import TransactionStatus
from topup.utils.errors import InvalidStateError, NotFoundError, PersistenceError, ProviderError, ValidationError


class StubProvider:
    def __init__(self, error: Exception | None = None):
        self.calls: list[dict] = []
        self.error = error

    async def create_qris_payment(self, **kwargs) -> QrisPayment:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return QrisPayment(qr_string="QR", raw={"qr": "QR"})


class Harness:
    def __init__(self, provider: StubProvider | None = None):
        self.provider = provider or StubProvider()
        self.fulfilled: list[int] = []

    async def _hook(self, transaction) -> None:
        self.fulfilled.append(transaction.id)

    async def run(self, operation):
        async with db_core.SessionLocal() as db:
            lifecycle = TransactionLifecycle(TransactionRepository(db), self.provider, on_success=self._hook)
            return await operation(lifecycle)

    async def create(self, **overrides):
        values = {"total_diamond": 100, "total_amount": 15000, "no_wa": "081234567890", "target_id": 42}
        values.update(overrides)
        return await self.run(lambda lc: lc.create(**values))

    async def status_of(self, transaction_id: int) -> TransactionStatus:
        transaction = await self.run(lambda lc: lc.get(transaction_id))
        return transaction.status


@pytest.mark.asyncio
async def test_create_starts_pending_with_reference():
    harness = Harness()
    transaction = await harness.create()
    assert transaction.status == TransactionStatus.PENDING
    assert transaction.merchant_transaction_id.startswith("TRX-")
    assert transaction.created_at is not None


@pytest.mark.asyncio
async def test_duplicate_reference_is_persistence_error():
    harness = Harness()
    first = await harness.create()

    async def _insert_same(lc):
        return await lc.repository.create(
            merchant_transaction_id=first.merchant_transaction_id,
            total_diamond=1,
            total_amount=1,
            no_wa="0800",
            target_id=1,
        )

    with pytest.raises(PersistenceError):
        await harness.run(_insert_same)


@pytest.mark.asyncio
async def test_initiate_payment_uses_stored_amount_and_moves_to_processing():
    harness = Harness()
    transaction = await harness.create(total_amount=15000, total_diamond=100)

    initiation = await harness.run(lambda lc: lc.initiate_payment(transaction.id))

    assert initiation.reference_id == transaction.merchant_transaction_id
    assert initiation.transaction_id == transaction.id
    assert initiation.qris.qr_string == "QR"
    assert harness.provider.calls == [
        {
            "reference_id": transaction.merchant_transaction_id,
            "amount": 15000,
            "payer_label": "081234567890",
            "quantity_label": 100,
            "description": "Top Up 100 Diamonds",
        }
    ]
    assert await harness.status_of(transaction.id) == TransactionStatus.PROCESSING


@pytest.mark.asyncio
async def test_reinitiating_processing_calls_provider_again_without_status_change():
    harness = Harness()
    transaction = await harness.create()
    await harness.run(lambda lc: lc.initiate_payment(transaction.id))
    await harness.run(lambda lc: lc.initiate_payment(transaction.id))
    assert len(harness.provider.calls) == 2
    assert await harness.status_of(transaction.id) == TransactionStatus.PROCESSING


@pytest.mark.asyncio
async def test_initiate_unknown_transaction_is_not_found():
    with pytest.raises(NotFoundError):
        await Harness().run(lambda lc: lc.initiate_payment(999))


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", [TransactionStatus.SUCCESS, TransactionStatus.FAILED])
async def test_initiate_terminal_transaction_is_rejected(terminal):
    harness = Harness()
    transaction = await harness.create()
    await harness.run(lambda lc: lc.update_status(transaction.id, terminal))

    with pytest.raises(InvalidStateError):
        await harness.run(lambda lc: lc.initiate_payment(transaction.id))
    assert harness.provider.calls == []


@pytest.mark.asyncio
async def test_provider_failure_leaves_status_pending():
    harness = Harness(StubProvider(error=ProviderError(kind="timeout")))
    transaction = await harness.create()
    with pytest.raises(ProviderError):
        await harness.run(lambda lc: lc.initiate_payment(transaction.id))
    assert await harness.status_of(transaction.id) == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_replayed_success_webhook_is_idempotent():
    harness = Harness()
    transaction = await harness.create()
    payload = {"merchant_transaction_id": transaction.merchant_transaction_id, "status": "success"}

    first = await harness.run(lambda lc: lc.apply_webhook_event(transaction.merchant_transaction_id, payload))
    second = await harness.run(lambda lc: lc.apply_webhook_event(transaction.merchant_transaction_id, payload))

    assert first.status == TransactionStatus.SUCCESS
    assert second.status == TransactionStatus.SUCCESS
    assert harness.fulfilled == [transaction.id]


@pytest.mark.asyncio
async def test_concurrent_success_webhooks_fulfil_once():
    harness = Harness()
    transaction = await harness.create()
    payload = {"merchant_transaction_id": transaction.merchant_transaction_id}

    results = await asyncio.gather(
        *(
            harness.run(lambda lc: lc.apply_webhook_event(transaction.merchant_transaction_id, payload))
            for _ in range(5)
        )
    )

    assert all(result.status == TransactionStatus.SUCCESS for result in results)
    assert harness.fulfilled == [transaction.id]


@pytest.mark.asyncio
async def test_failure_webhook_then_success_webhook_stays_failed():
    harness = Harness()
    transaction = await harness.create()
    reference = transaction.merchant_transaction_id

    await harness.run(lambda lc: lc.apply_webhook_event(reference, {"status": "EXPIRED"}))
    await harness.run(lambda lc: lc.apply_webhook_event(reference, {"status": "paid"}))

    assert await harness.status_of(transaction.id) == TransactionStatus.FAILED
    assert harness.fulfilled == []


@pytest.mark.asyncio
async def test_pending_notification_changes_nothing():
    harness = Harness()
    transaction = await harness.create()
    result = await harness.run(
        lambda lc: lc.apply_webhook_event(transaction.merchant_transaction_id, {"status": "pending"})
    )
    assert result.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_webhook_for_unknown_reference_is_not_found():
    with pytest.raises(NotFoundError):
        await Harness().run(lambda lc: lc.apply_webhook_event("TRX-missing", {}))


@pytest.mark.asyncio
async def test_check_status_hides_foreign_references():
    harness = Harness()
    transaction = await harness.create(no_wa="081111")

    found = await harness.run(lambda lc: lc.check_status(transaction.merchant_transaction_id, "081111"))
    assert found.id == transaction.id

    with pytest.raises(NotFoundError) as wrong_owner:
        await harness.run(lambda lc: lc.check_status(transaction.merchant_transaction_id, "082222"))
    with pytest.raises(NotFoundError) as missing:
        await harness.run(lambda lc: lc.check_status("TRX-missing", "081111"))
    assert wrong_owner.value.detail == missing.value.detail
    assert wrong_owner.value.status_code == missing.value.status_code


@pytest.mark.asyncio
async def test_admin_update_rejects_unchanged_status():
    harness = Harness()
    transaction = await harness.create()
    with pytest.raises(ValidationError):
        await harness.run(
            lambda lc: lc.update_status_by_reference(transaction.merchant_transaction_id, TransactionStatus.PENDING)
        )


@pytest.mark.asyncio
async def test_admin_update_to_success_triggers_fulfillment_once():
    harness = Harness()
    transaction = await harness.create()
    reference = transaction.merchant_transaction_id

    updated = await harness.run(lambda lc: lc.update_status_by_reference(reference, TransactionStatus.SUCCESS))
    await harness.run(lambda lc: lc.apply_webhook_event(reference, {"status": "success"}))

    assert updated.status == TransactionStatus.SUCCESS
    assert harness.fulfilled == [transaction.id]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "start, target",
    [
        (TransactionStatus.PROCESSING, TransactionStatus.PENDING),
        (TransactionStatus.SUCCESS, TransactionStatus.FAILED),
        (TransactionStatus.SUCCESS, TransactionStatus.PROCESSING),
        (TransactionStatus.FAILED, TransactionStatus.SUCCESS),
        (TransactionStatus.FAILED, TransactionStatus.PENDING),
    ],
)
async def test_admin_update_cannot_move_backwards_or_out_of_terminal(start, target):
    harness = Harness()
    transaction = await harness.create()
    await harness.run(lambda lc: lc.update_status(transaction.id, start))

    with pytest.raises(InvalidStateError):
        await harness.run(lambda lc: lc.update_status(transaction.id, target))
    assert await harness.status_of(transaction.id) == start


@pytest.mark.asyncio
async def test_admin_update_unknown_reference_is_not_found():
    with pytest.raises(NotFoundError):
        await Harness().run(lambda lc: lc.update_status_by_reference("TRX-missing", TransactionStatus.FAILED))


@pytest.mark.asyncio
async def test_list_transactions_paginates_and_filters():
    harness = Harness()
    created = [await harness.create(target_id=index + 1) for index in range(3)]
    await harness.run(lambda lc: lc.update_status(created[0].id, TransactionStatus.FAILED))

    page, total, total_pages = await harness.run(lambda lc: lc.list_transactions(page=1, limit=2))
    assert (len(page), total, total_pages) == (2, 3, 2)

    failed, total, _ = await harness.run(
        lambda lc: lc.list_transactions(page=1, limit=10, status=TransactionStatus.FAILED)
    )
    assert [txn.id for txn in failed] == [created[0].id]
    assert total == 1


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({}, TransactionStatus.SUCCESS),
        ({"status": "SUCCESS"}, TransactionStatus.SUCCESS),
        ({"transaction_status": "settlement"}, TransactionStatus.SUCCESS),
        ({"payment_status": "Paid "}, TransactionStatus.SUCCESS),
        ({"status": "expired"}, TransactionStatus.FAILED),
        ({"status": "cancelled"}, TransactionStatus.FAILED),
        ({"status": "pending"}, None),
        ({"status": "weird"}, None),
    ],
)
def test_resolve_webhook_status(payload, expected):
    assert resolve_webhook_status(payload) is expected


@pytest.mark.asyncio
async def test_failing_fulfillment_hook_does_not_fail_the_webhook():
    harness = Harness()
    transaction = await harness.create()

    async def _broken_hook(_transaction) -> None:
        raise RuntimeError("fulfillment backend down")

    async def _apply(lc):
        lc.on_success = _broken_hook
        return await lc.apply_webhook_event(transaction.merchant_transaction_id, {"status": "success"})

    result = await harness.run(_apply)

    assert result.status == TransactionStatus.SUCCESS
    assert await harness.status_of(transaction.id) == TransactionStatus.SUCCESS


@pytest.mark.asyncio
async def test_provider_call_runs_outside_a_database_transaction():
    transaction = await Harness().create()

    async with db_core.SessionLocal() as db:

        class SessionCheckingProvider(StubProvider):
            async def create_qris_payment(self, **kwargs) -> QrisPayment:
                self.in_transaction = db.in_transaction()
                return await super().create_qris_payment(**kwargs)

        provider = SessionCheckingProvider()
        lifecycle = TransactionLifecycle(TransactionRepository(db), provider)
        await lifecycle.initiate_payment(transaction.id)

    assert provider.in_transaction is False
    assert len(provider.calls) == 1
