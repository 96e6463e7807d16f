"""Transaction boundary for generation jobs, images, workflows and the token ledger.

Every repository in a UnitOfWork shares one session, so a job transition and
the ledger entry it implies commit or roll back together.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from blumpo.repositories.ad_image import AdImageRepository
from blumpo.repositories.ad_workflow import AdWorkflowRepository
from blumpo.repositories.generation_job import GenerationJobRepository
from blumpo.repositories.token_ledger import TokenLedgerRepository

logger = structlog.get_logger()


class UnitOfWork:
    """One database transaction with the repositories bound to it.

    Example:
        async with await uow_factory() as uow:
            if await uow.generation_jobs.claim_for_start(job_id):
                await uow.token_ledger.reserve(user_id, 80, job_id)
            # Commit on clean exit; rollback (and re-raise) if anything failed
    """

    def __init__(self, session: AsyncSession):
        """Bind repositories to the session.

        Args:
            session: Session owned by this unit of work; closed on exit
        """
        self.session = session

        self.generation_jobs = GenerationJobRepository(session)
        self.ad_images = AdImageRepository(session)
        self.ad_workflows = AdWorkflowRepository(session)
        self.token_ledger = TokenLedgerRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Commit or roll back, then close the session.

        Returns:
            False so that exceptions propagate to the caller
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Build the coroutine that opens a fresh UnitOfWork per call.

    Services receive this factory instead of a session so each step of a
    long-running flow (claim, dispatch, settle) gets its own short transaction.

    Example:
        uow_factory = create_uow_factory(setup_db_session(settings.database_url))
        async with await uow_factory() as uow:
            job = await uow.generation_jobs.get_by_id(job_id)
    """

    async def _create_uow():
        return UnitOfWork(session_factory())

    return _create_uow
