"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- Multiple repository operations are atomic
"""

import pytest

from blumpo.models import GenerationJob, JobStatus, TokenAccount
from blumpo.services.exceptions import InsufficientBalance


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory, user_id):
    """Changes made within the context persist after the context exits."""
    async with await uow_factory() as uow:
        job = await uow.generation_jobs.add(GenerationJob(user_id=user_id, formats=["1:1"]))
        job_id = job.id

    async with await uow_factory() as uow:
        found = await uow.generation_jobs.get_by_id(job_id)
        assert found is not None
        assert found.status == JobStatus.QUEUED
        assert found.formats == ["1:1"]


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory, user_id):
    """Changes are rolled back and the exception propagates."""
    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            job = await uow.generation_jobs.add(GenerationJob(user_id=user_id))
            job_id = job.id
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.get_by_id(job_id) is None


@pytest.mark.asyncio
async def test_uow_multiple_operations_atomic(uow_factory, user_id):
    """A failing ledger operation undoes the job claim made in the same transaction."""
    async with await uow_factory() as uow:
        uow.session.add(TokenAccount(user_id=user_id, balance=10))
        job = await uow.generation_jobs.add(GenerationJob(user_id=user_id))
        job_id = job.id

    with pytest.raises(InsufficientBalance):
        async with await uow_factory() as uow:
            assert await uow.generation_jobs.claim_for_start(job_id)
            await uow.token_ledger.reserve(user_id, 50, job_id)

    async with await uow_factory() as uow:
        job = await uow.generation_jobs.get_by_id(job_id)
        assert job.status == JobStatus.QUEUED
        assert await uow.token_ledger.get_balance(user_id) == 10
