"""TokenAccount and TokenLedgerEntry entities - token balances and their audit trail."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from blumpo.core.timezone import UTCDateTime, utc_now


class LedgerReason(str, Enum):
    """Reasons recorded on ledger entries tied to generation jobs."""

    JOB_RESERVE = "JOB_RESERVE"
    JOB_REFUND = "JOB_REFUND"
    JOB_REFUND_REVERT = "JOB_REFUND_REVERT"


class TokenAccount(SQLModel, table=True):
    """One token balance per user, with the billing plan it belongs to."""

    __tablename__ = "token_accounts"  # type: ignore[assignment]

    user_id: UUID = Field(primary_key=True)
    balance: int = Field(default=0, ge=0)
    plan_code: str = Field(default="FREE", max_length=50)


class TokenLedgerEntry(SQLModel, table=True):
    """Append-only record of every balance change.

    (reason, reference_id) is unique so replays of the same operation for the
    same job cannot debit or credit twice.
    """

    __tablename__ = "token_ledger"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("reason", "reference_id", name="uq_token_ledger_reason_ref"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: UUID = Field(index=True)
    occurred_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(UTCDateTime(), nullable=False)
    )
    delta: int
    reason: str = Field(max_length=50)
    reference_id: Optional[str] = Field(default=None, max_length=255)
    balance_after: int
