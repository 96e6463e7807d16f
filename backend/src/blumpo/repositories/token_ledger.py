"""Token ledger repository for Blumpo backend.

Owns every balance mutation. Each operation locks the user's token account
row (FOR UPDATE) and appends a ledger entry in the same transaction, so
check-then-debit is atomic at this boundary. Callers never read the balance
to decide whether a reservation succeeded; the reserve call itself is the
source of truth.
"""

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from blumpo.models.token_account import LedgerReason, TokenAccount, TokenLedgerEntry
from blumpo.services.exceptions import (
    InsufficientBalance,
    NoRefundToRevert,
    TokenAccountNotFound,
)

logger = structlog.get_logger()


class TokenLedgerRepository:
    """Repository for TokenAccount balances and TokenLedgerEntry audit rows."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_account(self, user_id: UUID) -> TokenAccount | None:
        """Retrieve a user's token account, or None if the user has none."""
        result = await self.session.execute(
            select(TokenAccount).where(TokenAccount.user_id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: UUID) -> int:
        """Current balance; users without an account have zero tokens."""
        account = await self.get_account(user_id)
        return account.balance if account else 0

    async def get_plan_code(self, user_id: UUID) -> str | None:
        """Billing plan of the user's account, None if the user has no account."""
        account = await self.get_account(user_id)
        return account.plan_code if account else None

    async def get_entry_by_reference(
        self, reference_id: str, reason: LedgerReason | str
    ) -> TokenLedgerEntry | None:
        """Retrieve the ledger entry recorded for a reference and reason.

        Args:
            reference_id: External reference (job id)
            reason: Ledger reason (e.g. JOB_RESERVE)

        Returns:
            Matching entry if present, None otherwise
        """
        reason_value = reason.value if isinstance(reason, LedgerReason) else reason
        result = await self.session.execute(
            select(TokenLedgerEntry)
            .where(TokenLedgerEntry.reference_id == reference_id)  # type: ignore[arg-type]
            .where(TokenLedgerEntry.reason == reason_value)  # type: ignore[arg-type]
            .order_by(TokenLedgerEntry.occurred_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def append_entry(
        self,
        user_id: UUID,
        delta: int,
        reason: LedgerReason,
        reference_id: str | None = None,
    ) -> TokenLedgerEntry:
        """Apply a balance change and record it, idempotently per (reason, reference).

        Args:
            user_id: Account owner
            delta: Signed token amount (negative debits)
            reason: Ledger reason
            reference_id: Job id the change belongs to

        Returns:
            The new entry, or the existing one if this (reason, reference) was already applied

        Raises:
            TokenAccountNotFound: User has no token account
            InsufficientBalance: The change would make the balance negative
        """
        result = await self.session.execute(
            select(TokenAccount)
            .where(TokenAccount.user_id == user_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise TokenAccountNotFound(f"Token account not found for user {user_id}")

        if reference_id is not None:
            existing = await self.get_entry_by_reference(reference_id, reason)
            if existing is not None:
                logger.info(
                    "ledger.entry_already_applied",
                    user_id=str(user_id),
                    reason=reason.value,
                    reference_id=reference_id,
                )
                return existing

        new_balance = account.balance + delta
        if new_balance < 0:
            raise InsufficientBalance(required=-delta, balance=account.balance)

        entry = TokenLedgerEntry(
            user_id=user_id,
            delta=delta,
            reason=reason.value,
            reference_id=reference_id,
            balance_after=new_balance,
        )
        account.balance = new_balance
        self.session.add(entry)
        self.session.add(account)
        await self.session.flush()

        logger.info(
            "ledger.entry_appended",
            user_id=str(user_id),
            delta=delta,
            reason=reason.value,
            reference_id=reference_id,
            balance_after=new_balance,
        )
        return entry

    async def reserve(self, user_id: UUID, amount: int, job_id: UUID) -> TokenLedgerEntry:
        """Atomically debit tokens for a job.

        Raises:
            InsufficientBalance: Balance lower than amount (nothing is written)
            TokenAccountNotFound: User has no token account
        """
        return await self.append_entry(user_id, -amount, LedgerReason.JOB_RESERVE, str(job_id))

    async def refund(self, user_id: UUID, job_id: UUID) -> int:
        """Credit back a job's reservation exactly once.

        The refunded amount is taken from the reservation entry, so callers cannot
        refund more than was reserved.

        Returns:
            Tokens refunded by this call or a previous one; 0 if the job had no reservation
        """
        reservation = await self.get_entry_by_reference(str(job_id), LedgerReason.JOB_RESERVE)
        if reservation is None or reservation.delta == 0:
            return 0
        amount = -reservation.delta
        await self.append_entry(user_id, amount, LedgerReason.JOB_REFUND, str(job_id))
        return amount

    async def revert_refund(self, user_id: UUID, amount: int, job_id: UUID) -> TokenLedgerEntry:
        """Charge a refunded job again because it delivered partial output.

        Raises:
            NoRefundToRevert: The job was never refunded
            InsufficientBalance: Balance lower than amount
        """
        refund = await self.get_entry_by_reference(str(job_id), LedgerReason.JOB_REFUND)
        if refund is None:
            raise NoRefundToRevert(f"Job {job_id} has no refund to revert")
        return await self.append_entry(
            user_id, -amount, LedgerReason.JOB_REFUND_REVERT, str(job_id)
        )
