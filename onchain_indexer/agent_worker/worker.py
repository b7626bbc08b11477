"""
Address indexing worker: claim a job, run the ingestion pipeline, record the outcome.

Each worker is a small state machine, independent of its siblings:

    IDLE --claim ok--> PROCESSING --pipeline done--> IDLE
    IDLE --nothing to claim / claim error--> BACKOFF_WAIT --> IDLE

Processing runs signature sync (sequential pages, newest to oldest) and then
transaction sync (lease unprocessed signatures, batch fetch, persist, mark).
Per-signature fetch failures are soft; page-fetch and store failures abort the
job, which is moved to error. The worker itself never stops on a job failure.
"""

from __future__ import annotations

import os
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from onchain_indexer.agent_worker.backoff import Backoff
from onchain_indexer.core.exceptions import EmptyPageError, PipelineAbort
from onchain_indexer.database.models import JOB_ERROR, JOB_READY, Job
from onchain_indexer.database.store import IndexStore
from onchain_indexer.indexer_logging import (
    bind_job_context,
    clear_job_context,
    get_logger,
    mask_addr,
)
from onchain_indexer.solana_rpc.batch import BatchFetcher
from onchain_indexer.solana_rpc.client import RpcClient
from onchain_indexer.solana_rpc.models import IndexedTransaction
from onchain_indexer.solana_rpc.normalizer import resolve_direction

logger = get_logger(__name__)

STATE_IDLE = "idle"
STATE_PROCESSING = "processing"
STATE_BACKOFF_WAIT = "backoff_wait"

DEFAULT_MAX_SIGNATURE_PAGES = 500
DEFAULT_PAGE_DELAY_SEC = 0.125
DEFAULT_LEASE_LIMIT = 100


def process_tag() -> str:
    """hostname:pid of this process; prefixes worker ids stored on claimed jobs."""
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class PipelineConfig:
    """Limits for one job's signature and transaction sync."""

    max_signature_pages: int = DEFAULT_MAX_SIGNATURE_PAGES
    page_delay_sec: float = DEFAULT_PAGE_DELAY_SEC
    lease_limit: int = DEFAULT_LEASE_LIMIT


@dataclass
class SignatureSyncStats:
    pages: int = 0
    received: int = 0
    inserted: int = 0
    cap_reached: bool = False


@dataclass
class TransactionSyncStats:
    passes: int = 0
    processed: int = 0
    failed: int = 0
    transactions: int = 0
    token_transfers: int = 0


@dataclass
class WorkerState:
    """Mutable counters for heartbeat and monitoring."""

    state: str = STATE_IDLE
    jobs_ready: int = 0
    jobs_failed: int = 0
    idle_polls: int = 0
    last_job_id: int | None = None
    last_error: str | None = None
    history: deque[str] = field(default_factory=lambda: deque(maxlen=64))


class WorkerScheduler:
    """One worker: claims jobs from the store and drives the pipeline for each."""

    def __init__(
        self,
        worker_id: int,
        store: IndexStore,
        client: RpcClient,
        fetcher: BatchFetcher,
        backoff: Backoff,
        *,
        config: PipelineConfig | None = None,
        sleep: Callable[[float], object] = time.sleep,
        owner: str | None = None,
        log: Any = None,
    ) -> None:
        self.worker_id = worker_id
        self.owner = owner or f"{process_tag()}/{worker_id}"
        self._store = store
        self._client = client
        self._fetcher = fetcher
        self._backoff = backoff
        self._config = config or PipelineConfig()
        self._sleep = sleep
        self._log = log or logger
        self.state = WorkerState()

    def _set_state(self, state: str) -> None:
        self.state.state = state
        self.state.history.append(state)

    # -- pipeline ---------------------------------------------------------------

    def sync_signatures(self, address: str) -> SignatureSyncStats:
        """
        Page backwards through the address history and append every page.

        Continues while pages are full and the page cap is not reached. Each
        page's oldest signature is the next request's `before` bound.
        """
        stats = SignatureSyncStats()
        page_size = self._client.page_size
        cursor: str | None = None
        while True:
            if stats.pages >= self._config.max_signature_pages:
                stats.cap_reached = True
                self._log.warning(
                    "signature_sync_page_cap_reached",
                    pages=stats.pages,
                    received=stats.received,
                )
                break
            try:
                records, next_cursor = self._client.fetch_signatures_page(address, cursor)
            except EmptyPageError:
                break
            stats.pages += 1
            stats.received += len(records)
            if records:
                stats.inserted += self._store.append_signatures(address, records)
            self._log.info(
                "signatures_page_stored",
                page=stats.pages,
                page_len=len(records),
                total=stats.received,
            )
            if len(records) < page_size or next_cursor is None:
                break
            cursor = next_cursor
            self._sleep(self._config.page_delay_sec)
        return stats

    def sync_transactions(self, address: str) -> TransactionSyncStats:
        """
        Lease unprocessed signatures, fetch and persist them, mark the successes.

        Signatures that fail in this run are excluded from further leases so the
        loop ends; they stay unprocessed for a later job run.
        """
        stats = TransactionSyncStats()
        failed: set[str] = set()
        while True:
            leased = self._store.lease_unprocessed_signatures(
                address, self._config.lease_limit, exclude=failed
            )
            if not leased:
                break
            stats.passes += 1
            batch = self._fetcher.fetch_many(leased)
            if batch.succeeded:
                resolved = [
                    IndexedTransaction(
                        raw=t.raw,
                        balance_deltas=t.balance_deltas,
                        token_transfers=[resolve_direction(c, address) for c in t.token_transfers],
                        signature=t.signature,
                    )
                    for t in batch.succeeded
                ]
                saved = self._store.save_transaction_data(address, resolved)
                stats.transactions += saved.transactions
                stats.token_transfers += saved.token_transfers
            if batch.processed_signatures:
                self._store.mark_signatures_processed(address, batch.processed_signatures)
            stats.processed += len(batch.processed_signatures)
            if batch.failed_signatures:
                failed.update(batch.failed_signatures)
                stats.failed += len(batch.failed_signatures)
                self._log.warning(
                    "transaction_sync_soft_failures",
                    pass_index=stats.passes,
                    failed=len(batch.failed_signatures),
                    sample_error=batch.errors[0].message if batch.errors else None,
                )
        return stats

    def process_job(self, job: Job) -> str:
        """Run the pipeline for one claimed job and record ready/error. Returns the status written."""
        bind_job_context(
            worker_id=self.worker_id, owner=self.owner, job_id=job.id, address=mask_addr(job.address)
        )
        started = time.monotonic()
        status = JOB_READY
        try:
            try:
                sig_stats = self._run_stage("signature_sync", self.sync_signatures, job.address)
                tx_stats = self._run_stage("transaction_sync", self.sync_transactions, job.address)
                self._log.info(
                    "job_pipeline_completed",
                    pages=sig_stats.pages,
                    signatures_received=sig_stats.received,
                    signatures_inserted=sig_stats.inserted,
                    processed=tx_stats.processed,
                    failed=tx_stats.failed,
                    transactions=tx_stats.transactions,
                    token_transfers=tx_stats.token_transfers,
                    duration_sec=round(time.monotonic() - started, 2),
                )
                self.state.jobs_ready += 1
            except PipelineAbort as e:
                status = JOB_ERROR
                self.state.jobs_failed += 1
                self.state.last_error = str(e)
                self._log.error("job_pipeline_aborted", stage=e.stage, error=str(e), exc_info=True)

            try:
                if not self._store.update_job_status(
                    job.id, status, worker_id=self.worker_id, owner=self.owner
                ):
                    self._log.warning("job_status_not_updated", status=status)
            except Exception as e:
                self._log.exception("job_status_update_failed", status=status, error=str(e))
            self.state.last_job_id = job.id
            return status
        finally:
            clear_job_context()

    @staticmethod
    def _run_stage(stage: str, fn: Callable[[str], Any], address: str) -> Any:
        try:
            return fn(address)
        except Exception as e:
            raise PipelineAbort(stage, str(e)) from e

    # -- state machine --------------------------------------------------------------

    def run_once(self) -> bool:
        """One Idle step: claim and process a job, or back off. Returns True if a job ran."""
        try:
            job = self._store.claim_pending_job(self.worker_id, owner=self.owner)
        except Exception as e:
            self._log.warning("job_claim_failed", worker_id=self.worker_id, error=str(e))
            job = None

        if job is None:
            self.state.idle_polls += 1
            self._set_state(STATE_BACKOFF_WAIT)
            self._backoff.next_delay()
            self._set_state(STATE_IDLE)
            return False

        self._backoff.reset()
        self._set_state(STATE_PROCESSING)
        self._log.info("job_claimed", worker_id=self.worker_id, job_id=job.id, address=mask_addr(job.address))
        try:
            self.process_job(job)
        finally:
            self._set_state(STATE_IDLE)
        return True

    def run(self, stop_event: threading.Event, *, max_iterations: int | None = None) -> None:
        """Loop run_once until stop_event is set (or max_iterations steps have run)."""
        self._log.info("worker_started", worker_id=self.worker_id, owner=self.owner)
        iterations = 0
        while not stop_event.is_set():
            if max_iterations is not None and iterations >= max_iterations:
                break
            iterations += 1
            try:
                self.run_once()
            except Exception as e:
                # unexpected bug outside job processing; keep polling
                self.state.last_error = str(e)
                self._log.exception("worker_iteration_failed", worker_id=self.worker_id, error=str(e))
        self._log.info(
            "worker_stopped",
            worker_id=self.worker_id,
            jobs_ready=self.state.jobs_ready,
            jobs_failed=self.state.jobs_failed,
        )
