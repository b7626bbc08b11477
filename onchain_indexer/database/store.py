"""
Index store: signatures, transactions, derived transfer rows and address jobs.

All access goes through the IndexStore interface. SqlAlchemyStore backs it
with SQLite (local, tests) or PostgreSQL (DATABASE_URL). Every append is
insert-or-ignore on the table's natural key, so re-running a job after a
crash never duplicates rows. Cross-worker coordination (job leasing,
signature marking) is expressed as conditional updates at this boundary;
no in-process lock is involved, so several processes may share one database.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from sqlalchemy import create_engine, event, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from onchain_indexer.core.exceptions import StoreError
from onchain_indexer.database.models import (
    JOB_INDEXING,
    JOB_PENDING,
    JOB_STATUSES,
    TOP_LEVEL_INNER_KEY,
    BalanceChangeRow,
    Base,
    Job,
    JobRow,
    SaveStats,
    SignatureRow,
    TokenTransferRow,
    TransactionRow,
)
from onchain_indexer.indexer_logging import get_logger, mask_addr
from onchain_indexer.solana_rpc.models import IndexedTransaction, SignatureRecord

logger = get_logger(__name__)

# Keeps multi-row INSERTs under SQLite's bound-parameter limit
INSERT_CHUNK_ROWS = 200
IN_CLAUSE_CHUNK = 500
_CLAIM_ATTEMPTS = 3


def _chunks(items: list[Any], size: int) -> Iterator[list[Any]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


# -----------------------------------------------------------------------------
# Abstract store
# -----------------------------------------------------------------------------


class IndexStore(ABC):
    """Persistence contract consumed by the worker pipeline and the ingress."""

    @abstractmethod
    def init_db(self) -> None:
        """Create tables and indexes if they do not exist."""
        ...

    @abstractmethod
    def append_signatures(self, address: str, records: list[SignatureRecord]) -> int:
        """Insert signatures for address, ignoring ones already stored. Returns number inserted."""
        ...

    @abstractmethod
    def lease_unprocessed_signatures(
        self,
        address: str,
        limit: int,
        exclude: Iterable[str] = (),
    ) -> list[str]:
        """Return up to limit unprocessed signatures for address, newest first."""
        ...

    @abstractmethod
    def mark_signatures_processed(self, address: str, signatures: list[str]) -> int:
        """Flag signatures as processed. Returns number of rows changed."""
        ...

    @abstractmethod
    def save_transaction_data(self, address: str, transactions: list[IndexedTransaction]) -> SaveStats:
        """Append transactions, balance changes and token transfers in one unit of work."""
        ...

    @abstractmethod
    def add_job(self, address: str) -> tuple[Job, bool]:
        """Enqueue a pending job for address. Returns (job, created); existing job if already tracked."""
        ...

    @abstractmethod
    def get_job(self, job_id: int) -> Job | None:
        ...

    @abstractmethod
    def claim_pending_job(self, worker_id: int, owner: str | None = None) -> Job | None:
        """Atomically move the oldest pending job to indexing for worker_id; None if none claimable."""
        ...

    @abstractmethod
    def update_job_status(
        self, job_id: int, status: str, worker_id: int | None = None, owner: str | None = None
    ) -> bool:
        """Move an indexing job to status. Returns False if the job was not indexing (or not held by worker_id/owner)."""
        ...


# -----------------------------------------------------------------------------
# SQLAlchemy implementation
# -----------------------------------------------------------------------------


class SqlAlchemyStore(IndexStore):
    """SQLAlchemy-backed store. Thread-safe: one session per operation."""

    def __init__(self, url: str, *, sqlite_timeout_sec: float = 30.0) -> None:
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = sqlite_timeout_sec
        self._url = url
        self._engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        if self.dialect == "sqlite" and ":memory:" not in url:
            event.listen(self._engine, "connect", _sqlite_pragmas)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def dispose(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session_scope(self, operation: str) -> Iterator[Session]:
        """Single session; commits on success, rolls back and raises StoreError on database errors."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning("store_operation_failed", operation=operation, error=str(e))
            raise StoreError(f"{operation} failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _insert_ignore(self, session: Session, model: Any, rows: list[dict[str, Any]]) -> int:
        """INSERT ... ON CONFLICT DO NOTHING; returns rows actually inserted."""
        if not rows:
            return 0
        if self.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif self.dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise StoreError(f"unsupported database dialect: {self.dialect}")
        inserted = 0
        for chunk in _chunks(rows, INSERT_CHUNK_ROWS):
            result = session.execute(insert(model).values(chunk).on_conflict_do_nothing())
            inserted += max(result.rowcount or 0, 0)
        return inserted

    def init_db(self) -> None:
        """Create all tables. Safe to call on every startup."""
        try:
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as e:
            logger.exception("store_init_db_failed", error=str(e))
            raise StoreError(f"init_db failed: {e}") from e
        logger.info("store_init_db", url=self._url.split("?")[0].split("//")[-1].split("@")[-1])

    # -- signatures -----------------------------------------------------------

    def append_signatures(self, address: str, records: list[SignatureRecord]) -> int:
        now = int(time.time())
        rows = [
            {
                "owner_address": address,
                "signature": r.signature,
                "block_time": r.block_time,
                "slot": r.slot,
                "is_processed": False,
                "created_at": now,
            }
            for r in records
        ]
        with self._session_scope("append_signatures") as session:
            inserted = self._insert_ignore(session, SignatureRow, rows)
        logger.debug("signatures_inserted", address=mask_addr(address), inserted=inserted, total=len(rows))
        return inserted

    def lease_unprocessed_signatures(
        self,
        address: str,
        limit: int,
        exclude: Iterable[str] = (),
    ) -> list[str]:
        excluded = list(exclude)
        stmt = select(SignatureRow.signature).where(
            SignatureRow.owner_address == address,
            SignatureRow.is_processed.is_(False),
        )
        if excluded:
            stmt = stmt.where(SignatureRow.signature.not_in(excluded))
        stmt = stmt.order_by(SignatureRow.block_time.desc(), SignatureRow.id).limit(limit)
        with self._session_scope("lease_unprocessed_signatures") as session:
            return list(session.execute(stmt).scalars().all())

    def mark_signatures_processed(self, address: str, signatures: list[str]) -> int:
        if not signatures:
            return 0
        updated = 0
        with self._session_scope("mark_signatures_processed") as session:
            for chunk in _chunks(list(signatures), IN_CLAUSE_CHUNK):
                result = session.execute(
                    update(SignatureRow)
                    .where(
                        SignatureRow.owner_address == address,
                        SignatureRow.signature.in_(chunk),
                        SignatureRow.is_processed.is_(False),
                    )
                    .values(is_processed=True)
                )
                updated += result.rowcount or 0
        return updated

    def count_signatures(self, address: str, *, processed: bool | None = None) -> int:
        stmt = select(func.count()).select_from(SignatureRow).where(SignatureRow.owner_address == address)
        if processed is not None:
            stmt = stmt.where(SignatureRow.is_processed.is_(processed))
        with self._session_scope("count_signatures") as session:
            return int(session.execute(stmt).scalar_one())

    # -- transactions and derived rows -----------------------------------------

    def save_transaction_data(self, address: str, transactions: list[IndexedTransaction]) -> SaveStats:
        if not transactions:
            return SaveStats()
        now = int(time.time())
        tx_rows: list[dict[str, Any]] = []
        balance_rows: list[dict[str, Any]] = []
        transfer_rows: list[dict[str, Any]] = []
        for indexed in transactions:
            raw = indexed.raw
            signature = indexed.signature
            tx_rows.append(
                {
                    "owner_address": address,
                    "signature": signature,
                    "slot": raw.slot,
                    "block_time": raw.block_time,
                    "err": raw.err_json(),
                    "fee": raw.fee,
                    "compute_units": raw.compute_units_consumed,
                    "num_signers": raw.num_signers,
                    "num_instructions": raw.num_instructions,
                    "created_at": now,
                }
            )
            for delta in indexed.balance_deltas:
                balance_rows.append(
                    {
                        "owner_address": address,
                        "signature": signature,
                        "account_address": delta.account_address,
                        "delta": delta.delta,
                        "slot": raw.slot,
                        "block_time": raw.block_time,
                    }
                )
            for t in indexed.token_transfers:
                transfer_rows.append(
                    {
                        "tracked_owner": address,
                        "signature": signature,
                        "source_owner": t.source_owner,
                        "destination_owner": t.destination_owner,
                        "source_token_account": t.source_token_account,
                        "destination_token_account": t.destination_token_account,
                        "token_mint": t.token_mint,
                        "token_program": t.token_program,
                        "amount_raw": str(t.amount_raw),
                        "amount_ui": t.amount_ui,
                        "decimals": t.decimals,
                        "asset_type": t.asset_type,
                        "transfer_type": t.transfer_type,
                        "direction": t.direction,
                        "instruction_idx": t.instruction_idx,
                        "inner_idx": t.inner_idx,
                        "inner_idx_key": t.inner_idx if t.inner_idx is not None else TOP_LEVEL_INNER_KEY,
                        "authority": t.authority,
                        "slot": raw.slot,
                        "block_time": raw.block_time,
                    }
                )

        started = time.monotonic()
        with self._session_scope("save_transaction_data") as session:
            stats = SaveStats(
                transactions=self._insert_ignore(session, TransactionRow, tx_rows),
                balance_changes=self._insert_ignore(session, BalanceChangeRow, balance_rows),
                token_transfers=self._insert_ignore(session, TokenTransferRow, transfer_rows),
            )
        logger.info(
            "transaction_data_saved",
            address=mask_addr(address),
            transactions=stats.transactions,
            balance_changes=stats.balance_changes,
            token_transfers=stats.token_transfers,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return stats

    def list_token_transfers(self, address: str, signature: str | None = None) -> list[dict[str, Any]]:
        stmt = select(TokenTransferRow).where(TokenTransferRow.tracked_owner == address)
        if signature is not None:
            stmt = stmt.where(TokenTransferRow.signature == signature)
        stmt = stmt.order_by(TokenTransferRow.id)
        with self._session_scope("list_token_transfers") as session:
            return [row.to_dict() for row in session.execute(stmt).scalars().all()]

    def list_balance_changes(self, address: str, signature: str | None = None) -> list[tuple[str, int]]:
        stmt = select(BalanceChangeRow.account_address, BalanceChangeRow.delta).where(
            BalanceChangeRow.owner_address == address
        )
        if signature is not None:
            stmt = stmt.where(BalanceChangeRow.signature == signature)
        stmt = stmt.order_by(BalanceChangeRow.id)
        with self._session_scope("list_balance_changes") as session:
            return [(r[0], r[1]) for r in session.execute(stmt).all()]

    def count_transactions(self, address: str) -> int:
        stmt = select(func.count()).select_from(TransactionRow).where(TransactionRow.owner_address == address)
        with self._session_scope("count_transactions") as session:
            return int(session.execute(stmt).scalar_one())

    # -- jobs -------------------------------------------------------------------

    def add_job(self, address: str) -> tuple[Job, bool]:
        address = (address or "").strip()
        if not address:
            raise ValueError("address must be non-empty")
        now = int(time.time())
        try:
            with self._session_scope("add_job") as session:
                row = JobRow(address=address, status=JOB_PENDING, created_at=now, updated_at=now)
                session.add(row)
                session.flush()
                job = row.to_job()
            logger.info("job_enqueued", job_id=job.id, address=mask_addr(address))
            return job, True
        except StoreError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
        with self._session_scope("add_job_existing") as session:
            existing = session.execute(select(JobRow).where(JobRow.address == address)).scalar_one()
            return existing.to_job(), False

    def get_job(self, job_id: int) -> Job | None:
        with self._session_scope("get_job") as session:
            row = session.get(JobRow, job_id)
            return row.to_job() if row else None

    def claim_pending_job(self, worker_id: int, owner: str | None = None) -> Job | None:
        """
        Oldest pending job -> indexing, held by worker_id (and owner, the
        process-qualified worker tag, when given).

        The candidate is read (FOR UPDATE SKIP LOCKED on PostgreSQL) and then
        taken with UPDATE ... WHERE status = 'pending'; the lease is granted only
        if that update changed exactly one row, so two claimers can never both win.
        """
        for _ in range(_CLAIM_ATTEMPTS):
            with self._session_scope("claim_pending_job") as session:
                candidate = (
                    select(JobRow.id)
                    .where(JobRow.status == JOB_PENDING)
                    .order_by(JobRow.created_at, JobRow.id)
                    .limit(1)
                )
                if self.dialect == "postgresql":
                    candidate = candidate.with_for_update(skip_locked=True)
                job_id = session.execute(candidate).scalar_one_or_none()
                if job_id is None:
                    return None
                result = session.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id, JobRow.status == JOB_PENDING)
                    .values(
                        status=JOB_INDEXING,
                        worker_id=worker_id,
                        claimed_by=owner,
                        updated_at=int(time.time()),
                    )
                )
                if result.rowcount == 1:
                    row = session.get(JobRow, job_id)
                    job = row.to_job()
                    logger.debug("job_claimed", job_id=job_id, worker_id=worker_id, owner=owner)
                    return job
            # Another worker took the candidate between read and update; try the next one
        return None

    def update_job_status(
        self, job_id: int, status: str, worker_id: int | None = None, owner: str | None = None
    ) -> bool:
        if status not in JOB_STATUSES:
            raise ValueError(f"unknown job status: {status}")
        conditions = [JobRow.id == job_id, JobRow.status == JOB_INDEXING]
        if worker_id is not None:
            conditions.append(JobRow.worker_id == worker_id)
        if owner is not None:
            conditions.append(JobRow.claimed_by == owner)
        with self._session_scope("update_job_status") as session:
            result = session.execute(
                update(JobRow).where(*conditions).values(status=status, updated_at=int(time.time()))
            )
            updated = result.rowcount or 0
        logger.debug("job_status_updated", job_id=job_id, status=status, updated=updated)
        return updated == 1


def _sqlite_pragmas(dbapi_conn: Any, connection_record: Any) -> None:
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA journal_mode = WAL")
    cur.execute("PRAGMA foreign_keys = ON")
    cur.close()


def get_store(url: str | None = None) -> SqlAlchemyStore:
    """Return a store for url (defaults to DATABASE_URL / INDEXER_DB_PATH)."""
    if url is None:
        from onchain_indexer.config import get_database_url

        url = get_database_url()
    return SqlAlchemyStore(url)
