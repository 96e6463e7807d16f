"""Token ledger tests.

Tests cover:
- Atomic reservation with insufficient-balance rejection
- Idempotency per (reason, job)
- Refunds capped at the reserved amount and applied once
- Reverting a refund for partial output
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from blumpo.models import LedgerReason, TokenLedgerEntry
from blumpo.services.exceptions import (
    InsufficientBalance,
    NoRefundToRevert,
    TokenAccountNotFound,
)


async def _entries(uow_factory, job_id) -> list[TokenLedgerEntry]:
    async with await uow_factory() as uow:
        result = await uow.session.execute(
            select(TokenLedgerEntry).where(TokenLedgerEntry.reference_id == str(job_id))
        )
        return list(result.scalars().all())


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_debits_and_records_entry(self, uow_factory, seed, user_id):
        await seed.account(user_id, balance=100)
        job_id = uuid4()

        async with await uow_factory() as uow:
            entry = await uow.token_ledger.reserve(user_id, 80, job_id)

        assert entry.delta == -80
        assert entry.balance_after == 20
        assert entry.reason == LedgerReason.JOB_RESERVE.value

        async with await uow_factory() as uow:
            assert await uow.token_ledger.get_balance(user_id) == 20

    @pytest.mark.asyncio
    async def test_reserve_twice_for_same_job_debits_once(self, uow_factory, seed, user_id):
        await seed.account(user_id, balance=100)
        job_id = uuid4()

        async with await uow_factory() as uow:
            first = await uow.token_ledger.reserve(user_id, 50, job_id)
        async with await uow_factory() as uow:
            second = await uow.token_ledger.reserve(user_id, 50, job_id)

        assert second.id == first.id
        async with await uow_factory() as uow:
            assert await uow.token_ledger.get_balance(user_id) == 50

    @pytest.mark.asyncio
    async def test_insufficient_balance_writes_nothing(self, uow_factory, seed, user_id):
        await seed.account(user_id, balance=50)
        job_id = uuid4()

        with pytest.raises(InsufficientBalance) as exc_info:
            async with await uow_factory() as uow:
                await uow.token_ledger.reserve(user_id, 80, job_id)

        assert exc_info.value.required == 80
        assert exc_info.value.balance == 50
        assert await _entries(uow_factory, job_id) == []
        async with await uow_factory() as uow:
            assert await uow.token_ledger.get_balance(user_id) == 50

    @pytest.mark.asyncio
    async def test_reserve_without_account(self, uow_factory, user_id):
        with pytest.raises(TokenAccountNotFound):
            async with await uow_factory() as uow:
                await uow.token_ledger.reserve(user_id, 50, uuid4())

    @pytest.mark.asyncio
    async def test_plan_code_and_missing_account(self, uow_factory, seed, user_id):
        await seed.account(user_id, plan_code="FREE")

        async with await uow_factory() as uow:
            assert await uow.token_ledger.get_plan_code(user_id) == "FREE"
            assert await uow.token_ledger.get_plan_code(uuid4()) is None
            assert await uow.token_ledger.get_balance(uuid4()) == 0


class TestRefund:
    @pytest.mark.asyncio
    async def test_refund_restores_reserved_amount_once(self, uow_factory, seed, user_id):
        await seed.account(user_id, balance=100)
        job_id = uuid4()
        async with await uow_factory() as uow:
            await uow.token_ledger.reserve(user_id, 80, job_id)

        async with await uow_factory() as uow:
            assert await uow.token_ledger.refund(user_id, job_id) == 80
        async with await uow_factory() as uow:
            await uow.token_ledger.refund(user_id, job_id)

        async with await uow_factory() as uow:
            assert await uow.token_ledger.get_balance(user_id) == 100
        reasons = sorted(entry.reason for entry in await _entries(uow_factory, job_id))
        assert reasons == [LedgerReason.JOB_REFUND.value, LedgerReason.JOB_RESERVE.value]

    @pytest.mark.asyncio
    async def test_refund_without_reservation_is_noop(self, uow_factory, seed, user_id):
        await seed.account(user_id, balance=100)
        job_id = uuid4()

        async with await uow_factory() as uow:
            assert await uow.token_ledger.refund(user_id, job_id) == 0

        assert await _entries(uow_factory, job_id) == []


class TestRevertRefund:
    @pytest.mark.asyncio
    async def test_revert_refund_charges_partial_amount(self, uow_factory, seed, user_id):
        await seed.account(user_id, balance=100)
        job_id = uuid4()
        async with await uow_factory() as uow:
            await uow.token_ledger.reserve(user_id, 80, job_id)
        async with await uow_factory() as uow:
            await uow.token_ledger.refund(user_id, job_id)

        async with await uow_factory() as uow:
            entry = await uow.token_ledger.revert_refund(user_id, 50, job_id)
        async with await uow_factory() as uow:
            again = await uow.token_ledger.revert_refund(user_id, 50, job_id)

        assert entry.delta == -50
        assert again.id == entry.id
        async with await uow_factory() as uow:
            assert await uow.token_ledger.get_balance(user_id) == 50

    @pytest.mark.asyncio
    async def test_revert_requires_prior_refund(self, uow_factory, seed, user_id):
        await seed.account(user_id, balance=100)

        with pytest.raises(NoRefundToRevert):
            async with await uow_factory() as uow:
                await uow.token_ledger.revert_refund(user_id, 50, uuid4())
