"""
Persistence models.

SQLAlchemy tables for signatures, transactions, balance changes, token
transfers and address jobs, plus the Job domain object handed to workers.
Timestamps are Unix seconds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JOB_PENDING = "pending"
JOB_INDEXING = "indexing"
JOB_READY = "ready"
JOB_ERROR = "error"
JOB_STATUSES = frozenset({JOB_PENDING, JOB_INDEXING, JOB_READY, JOB_ERROR})
JOB_TERMINAL_STATUSES = frozenset({JOB_READY, JOB_ERROR})

# token_transfers.inner_idx_key value for top-level instructions (NULL never conflicts)
TOP_LEVEL_INNER_KEY = -1


class SignatureRow(Base):
    """One signature per transaction; signature is the global dedup key."""

    __tablename__ = "signatures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_address = Column(String(64), nullable=False, index=True)
    signature = Column(String(128), nullable=False, unique=True)
    block_time = Column(BigInteger, nullable=True, index=True)
    slot = Column(BigInteger, nullable=True)
    is_processed = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(Integer, nullable=True)


class TransactionRow(Base):
    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("owner_address", "signature", name="uq_transactions_owner_sig"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_address = Column(String(64), nullable=False, index=True)
    signature = Column(String(128), nullable=False, index=True)
    slot = Column(BigInteger, nullable=False)
    block_time = Column(BigInteger, nullable=True)
    err = Column(Text, nullable=True)  # JSON; NULL on success
    fee = Column(BigInteger, nullable=False)
    compute_units = Column(BigInteger, nullable=True)
    num_signers = Column(Integer, nullable=False)
    num_instructions = Column(Integer, nullable=False)
    created_at = Column(Integer, nullable=True)


class BalanceChangeRow(Base):
    """Lamport delta per account (pre - post; positive = lamports left the account)."""

    __tablename__ = "balance_changes"
    __table_args__ = (
        UniqueConstraint("owner_address", "signature", "account_address", name="uq_balance_changes_row"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_address = Column(String(64), nullable=False, index=True)
    signature = Column(String(128), nullable=False, index=True)
    account_address = Column(String(64), nullable=False, index=True)
    delta = Column(BigInteger, nullable=False)
    slot = Column(BigInteger, nullable=True)
    block_time = Column(BigInteger, nullable=True)


class TokenTransferRow(Base):
    __tablename__ = "token_transfers"
    __table_args__ = (
        UniqueConstraint(
            "tracked_owner", "signature", "instruction_idx", "inner_idx_key", name="uq_token_transfers_row"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tracked_owner = Column(String(64), nullable=False, index=True)
    signature = Column(String(128), nullable=False, index=True)
    source_owner = Column(String(64), nullable=True, index=True)
    destination_owner = Column(String(64), nullable=True, index=True)
    source_token_account = Column(String(64), nullable=True)
    destination_token_account = Column(String(64), nullable=True)
    token_mint = Column(String(64), nullable=True, index=True)
    token_program = Column(String(64), nullable=True)
    amount_raw = Column(String(48), nullable=False)  # base units as decimal string; avoids precision loss
    amount_ui = Column(Float, nullable=True)
    decimals = Column(Integer, nullable=True)
    asset_type = Column(String(16), nullable=False)
    transfer_type = Column(String(16), nullable=False)
    direction = Column(String(16), nullable=False)
    instruction_idx = Column(Integer, nullable=False)
    inner_idx = Column(Integer, nullable=True)
    inner_idx_key = Column(Integer, nullable=False, default=TOP_LEVEL_INNER_KEY)
    authority = Column(String(64), nullable=True)
    slot = Column(BigInteger, nullable=True)
    block_time = Column(BigInteger, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tracked_owner": self.tracked_owner,
            "signature": self.signature,
            "source_owner": self.source_owner,
            "destination_owner": self.destination_owner,
            "source_token_account": self.source_token_account,
            "destination_token_account": self.destination_token_account,
            "token_mint": self.token_mint,
            "token_program": self.token_program,
            "amount_raw": int(self.amount_raw),
            "amount_ui": self.amount_ui,
            "decimals": self.decimals,
            "asset_type": self.asset_type,
            "transfer_type": self.transfer_type,
            "direction": self.direction,
            "instruction_idx": self.instruction_idx,
            "inner_idx": self.inner_idx,
            "authority": self.authority,
            "slot": self.slot,
            "block_time": self.block_time,
        }


class JobRow(Base):
    """Address indexing job. Leased by exactly one worker while indexing."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(64), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default=JOB_PENDING, index=True)
    worker_id = Column(Integer, nullable=True)
    # "host:pid/worker_id" of the claiming worker; unique across processes
    claimed_by = Column(String(128), nullable=True)
    created_at = Column(Integer, nullable=False, index=True)
    updated_at = Column(Integer, nullable=False)

    def to_job(self) -> "Job":
        return Job(
            id=self.id,
            address=self.address,
            status=self.status,
            worker_id=self.worker_id,
            claimed_by=self.claimed_by,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class Job:
    """Detached snapshot of a jobs row."""

    id: int
    address: str
    status: str
    worker_id: int | None
    claimed_by: str | None
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.id,
            "address": self.address,
            "status": self.status,
            "worker_id": self.worker_id,
            "claimed_by": self.claimed_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class SaveStats:
    transactions: int = 0
    balance_changes: int = 0
    token_transfers: int = 0
