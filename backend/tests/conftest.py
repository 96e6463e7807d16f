"""pytest fixtures for Blumpo backend tests.

Provides:
- session_factory: Function-scoped async session factory over a fresh on-disk SQLite database
- uow_factory: Function-scoped UnitOfWork factory
- settings: Test settings with short waits
- rendezvous: In-memory rendezvous
- fake_dispatcher: Engine dispatcher double recording trigger requests
- orchestrator, ingestor: Generation services wired to the fixtures above
- seed: Helpers creating jobs, images, archetypes and token accounts
"""

from datetime import datetime
from typing import AsyncGenerator, Awaitable, Callable, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from blumpo.core.config import Settings
from blumpo.core.database import setup_db_session
from blumpo.models import (
    AdArchetype,
    AdImage,
    AdWorkflow,
    GenerationJob,
    JobStatus,
    TokenAccount,
)
from blumpo.services.exceptions import DispatchError, DispatchTimeout
from blumpo.services.generation.ingestor import CallbackIngestor
from blumpo.services.generation.orchestrator import GenerationOrchestrator
from blumpo.services.generation.policy import GenerationPolicy
from blumpo.services.rendezvous.memory import InMemoryRendezvous
from blumpo.uow import create_uow_factory


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory over an empty on-disk SQLite database.

    A file (not :memory:) so concurrent sessions get separate connections with
    real transaction isolation.
    """
    factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    engine = factory.kw["bind"]

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: fast waits and fixed engine URLs."""
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        N8N_WEBHOOK_URL="https://engine.test/webhook/",
        N8N_QUICK_ADS_WEBHOOK_URL="https://engine.test/webhook/quick-ads",
        N8N_WEBHOOK_KEY="agent-key",
        CALLBACK_URL="https://app.test",
        CALLBACK_SECRET="",
        REDIS_URL="",
        GENERATION_MAX_WAIT_SECONDS=0.3,
        DISPATCH_TIMEOUT_SECONDS=1,
        IS_TEST_MODE=False,
        STALE_JOB_GRACE_SECONDS=0,
    )


@pytest.fixture
def policy(settings) -> GenerationPolicy:
    return GenerationPolicy(
        free_plan_code=settings.free_plan_code,
        partial_charge_tokens=settings.partial_charge_tokens,
    )


@pytest.fixture
def rendezvous() -> InMemoryRendezvous:
    return InMemoryRendezvous(ttl_seconds=60)


class FakeDispatcher:
    """Stands in for WorkflowDispatcher.

    Records every trigger. ``on_trigger`` runs inside the trigger call (e.g. to
    deliver the engine callback); ``error`` is raised after it.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.on_trigger: Optional[Callable[[dict], Awaitable[None]]] = None
        self.error: Optional[Exception] = None

    async def trigger(self, url: str, payload: dict, timeout: float) -> int:
        self.calls.append({"url": url, "payload": payload, "timeout": timeout})
        if self.on_trigger is not None:
            await self.on_trigger(payload)
        if self.error is not None:
            raise self.error
        return 200

    def fail_with(self, message: str = "workflow not found", upstream_status: int = 404) -> None:
        self.error = DispatchError(message, upstream_status=upstream_status)

    def time_out(self) -> None:
        self.error = DispatchTimeout("Webhook did not respond within 1s")


@pytest.fixture
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


class Seed:
    """Creates rows through short-lived UnitOfWork transactions."""

    def __init__(self, uow_factory):
        self.uow_factory = uow_factory

    async def account(self, user_id: UUID, balance: int = 500, plan_code: str = "PRO") -> None:
        async with await self.uow_factory() as uow:
            uow.session.add(TokenAccount(user_id=user_id, balance=balance, plan_code=plan_code))

    async def job(
        self,
        user_id: UUID,
        auto_generated: bool = False,
        status: JobStatus = JobStatus.QUEUED,
        formats: Optional[list] = None,
        archetype_code: Optional[str] = "problem_solution",
        brand_id: Optional[UUID] = None,
        started_at: Optional[datetime] = None,
        tokens_cost: int = 0,
        created_at: Optional[datetime] = None,
    ) -> GenerationJob:
        job = GenerationJob(
            user_id=user_id,
            brand_id=brand_id,
            auto_generated=auto_generated,
            status=status,
            formats=formats if formats is not None else ["1:1"],
            archetype_code=None if auto_generated else archetype_code,
            started_at=started_at,
            tokens_cost=tokens_cost,
        )
        if created_at is not None:
            job.created_at = created_at
        async with await self.uow_factory() as uow:
            await uow.generation_jobs.add(job)
        return job

    async def image(
        self,
        job: GenerationJob,
        public_url: Optional[str] = "https://cdn.test/ad.png",
        error_flag: bool = False,
        is_deleted: bool = False,
        workflow_id: Optional[UUID] = None,
        title: str = "Ad",
    ) -> AdImage:
        image = AdImage(
            job_id=job.id,
            user_id=job.user_id,
            brand_id=job.brand_id,
            public_url=public_url,
            error_flag=error_flag,
            is_deleted=is_deleted,
            workflow_id=workflow_id,
            title=title,
            width=1080,
            height=1080,
        )
        async with await self.uow_factory() as uow:
            await uow.ad_images.add(image)
        return image

    async def workflow(self, code: str = "problem_solution") -> AdWorkflow:
        workflow = AdWorkflow(archetype_code=code, workflow_uid=f"wf-{code}")
        async with await self.uow_factory() as uow:
            uow.session.add(
                AdArchetype(code=code, display_name="Problem / Solution", description="Pain first")
            )
            await uow.session.flush()
            uow.session.add(workflow)
        return workflow


@pytest.fixture
def seed(uow_factory) -> Seed:
    return Seed(uow_factory)


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def ingestor(uow_factory, rendezvous, policy) -> CallbackIngestor:
    return CallbackIngestor(uow_factory, rendezvous, policy)


@pytest.fixture
def orchestrator(uow_factory, rendezvous, fake_dispatcher, settings, policy):
    return GenerationOrchestrator(
        uow_factory=uow_factory,
        rendezvous=rendezvous,
        dispatcher=fake_dispatcher,
        settings=settings,
        policy=policy,
    )
