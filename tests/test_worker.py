"""
WorkerScheduler tests with a fake RPC client and a real temporary store:
pagination termination, soft per-signature failures, job outcomes and the
idle backoff path.
"""

from __future__ import annotations

import random
import threading

from onchain_indexer.agent_worker import Backoff, PipelineConfig, WorkerScheduler
from onchain_indexer.agent_worker.worker import STATE_BACKOFF_WAIT, STATE_IDLE, STATE_PROCESSING, process_tag
from onchain_indexer.core.exceptions import RpcTransportError, StoreError
from onchain_indexer.database import JOB_ERROR, JOB_INDEXING, JOB_READY
from onchain_indexer.solana_rpc import BatchFetcher

from rpc_fixtures import (
    WALLET_A,
    WALLET_B,
    FakeRpcClient,
    native_transfer_result,
    signature_records,
    spl_transfer_result,
)


def make_worker(store, fake, sleeps, *, max_pages=500, lease_limit=100, worker_id=1, owner=None) -> WorkerScheduler:
    fetcher = BatchFetcher(fake, chunk_size=10, concurrency=4, chunk_delay_sec=1.15, sleep=sleeps.append)
    backoff = Backoff(100, 1000, 2.0, sleep=sleeps.append, rng=random.Random(0))
    return WorkerScheduler(
        worker_id,
        store,
        fake,
        fetcher,
        backoff,
        config=PipelineConfig(max_signature_pages=max_pages, page_delay_sec=0.125, lease_limit=lease_limit),
        sleep=sleeps.append,
        owner=owner,
    )


def paged_history(page_lengths: list[int]):
    """Pages of consecutive, strictly older signatures plus a transaction for each."""
    pages, transactions, offset = [], {}, 0
    for length in page_lengths:
        records = signature_records("s", offset + length)[offset:]
        pages.append(records)
        for r in records:
            transactions[r.signature] = native_transfer_result(r.signature, lamports=1_000 + offset)
        offset += length
    return pages, transactions


# -----------------------------------------------------------------------------
# Signature sync
# -----------------------------------------------------------------------------


def test_pagination_stops_on_short_page(store, sleeps):
    pages, _ = paged_history([3, 3, 1])
    fake = FakeRpcClient(pages, page_size=3)
    worker = make_worker(store, fake, sleeps)

    stats = worker.sync_signatures(WALLET_A)

    assert stats.pages == 3
    assert stats.received == 7
    assert stats.inserted == 7
    assert not stats.cap_reached
    # each request is bounded by the oldest signature of the previous page
    assert fake.page_requests == [None, "s2", "s5"]
    assert sleeps == [0.125, 0.125]
    assert store.count_signatures(WALLET_A) == 7


def test_pagination_stops_on_empty_page(store, sleeps):
    pages, _ = paged_history([3, 3])
    fake = FakeRpcClient(pages, page_size=3)

    stats = make_worker(store, fake, sleeps).sync_signatures(WALLET_A)

    assert fake.page_requests == [None, "s2", "s5"]
    assert stats.pages == 2
    assert stats.received == 6


def test_pagination_respects_page_cap(store, sleeps):
    pages, _ = paged_history([3, 3, 3, 3])
    fake = FakeRpcClient(pages, page_size=3)

    stats = make_worker(store, fake, sleeps, max_pages=2).sync_signatures(WALLET_A)

    assert stats.cap_reached
    assert stats.pages == 2
    assert len(fake.page_requests) == 2


def test_pagination_of_empty_history(store, sleeps):
    fake = FakeRpcClient([], page_size=3)
    stats = make_worker(store, fake, sleeps).sync_signatures(WALLET_A)
    assert (stats.pages, stats.received) == (1, 0)
    assert sleeps == []


# -----------------------------------------------------------------------------
# Transaction sync
# -----------------------------------------------------------------------------


def test_failed_signatures_stay_unprocessed(store, sleeps):
    pages, transactions = paged_history([5])
    fake = FakeRpcClient(pages, transactions, page_size=10, failing={"s1", "s3"})
    worker = make_worker(store, fake, sleeps, lease_limit=2)
    worker.sync_signatures(WALLET_A)

    stats = worker.sync_transactions(WALLET_A)

    assert stats.processed == 3
    assert stats.failed == 2
    assert stats.transactions == 3
    assert store.count_signatures(WALLET_A, processed=True) == 3
    assert sorted(store.lease_unprocessed_signatures(WALLET_A, 10)) == ["s1", "s3"]
    # every signature was requested exactly once in this run
    assert sorted(fake.transaction_requests) == ["s0", "s1", "s2", "s3", "s4"]


def test_results_without_signatures_are_not_marked_processed(store, sleeps):
    pages, transactions = paged_history([2])
    for result in transactions.values():
        del result["transaction"]["signatures"]
    worker = make_worker(store, FakeRpcClient(pages, transactions, page_size=10), sleeps)
    worker.sync_signatures(WALLET_A)

    stats = worker.sync_transactions(WALLET_A)

    assert (stats.processed, stats.failed, stats.transactions) == (0, 2, 0)
    assert store.count_transactions(WALLET_A) == 0
    assert sorted(store.lease_unprocessed_signatures(WALLET_A, 10)) == ["s0", "s1"]


def test_failed_signatures_retried_on_next_run(store, sleeps):
    pages, transactions = paged_history([2])
    fake = FakeRpcClient(pages, transactions, page_size=10, failing={"s1"})
    worker = make_worker(store, fake, sleeps)
    worker.sync_signatures(WALLET_A)
    worker.sync_transactions(WALLET_A)

    fake.failing.clear()
    stats = worker.sync_transactions(WALLET_A)

    assert stats.processed == 1
    assert store.count_signatures(WALLET_A, processed=False) == 0


def test_token_transfer_direction_resolved_for_tracked_owner(store, sleeps):
    records = signature_records("t", 1)
    fake = FakeRpcClient([records], {"t0": spl_transfer_result("t0")}, page_size=10)
    worker = make_worker(store, fake, sleeps)
    worker.sync_signatures(WALLET_A)
    worker.sync_transactions(WALLET_A)

    [row] = store.list_token_transfers(WALLET_A, "t0")
    assert row["direction"] == "out"


# -----------------------------------------------------------------------------
# Jobs and state machine
# -----------------------------------------------------------------------------


def test_run_once_processes_job_to_ready(store, sleeps):
    pages, transactions = paged_history([3, 2])
    fake = FakeRpcClient(pages, transactions, page_size=3)
    worker = make_worker(store, fake, sleeps)
    job, _ = store.add_job(WALLET_A)

    assert worker.run_once() is True

    final = store.get_job(job.id)
    assert final.status == JOB_READY
    assert final.worker_id == 1
    assert store.count_transactions(WALLET_A) == 5
    assert worker.state.jobs_ready == 1
    assert worker.state.last_job_id == job.id
    assert list(worker.state.history) == [STATE_PROCESSING, STATE_IDLE]


def test_page_fetch_failure_moves_job_to_error(store, sleeps):
    class FailingPages(FakeRpcClient):
        def fetch_signatures_page(self, address, before=None):
            raise RpcTransportError("request failed: connection reset")

    worker = make_worker(store, FailingPages(page_size=3), sleeps)
    job, _ = store.add_job(WALLET_A)

    assert worker.run_once() is True

    assert store.get_job(job.id).status == JOB_ERROR
    assert worker.state.jobs_failed == 1
    assert "signature_sync" in worker.state.last_error


def test_store_failure_during_transaction_sync_moves_job_to_error(store, sleeps, monkeypatch):
    pages, transactions = paged_history([2])
    fake = FakeRpcClient(pages, transactions, page_size=10)
    worker = make_worker(store, fake, sleeps)
    job, _ = store.add_job(WALLET_A)

    def broken_save(address, transactions):
        raise StoreError("save_transaction_data failed: disk I/O error")

    monkeypatch.setattr(store, "save_transaction_data", broken_save)
    worker.run_once()

    assert store.get_job(job.id).status == JOB_ERROR
    assert store.count_signatures(WALLET_A, processed=True) == 0


def test_status_update_failure_does_not_crash_worker(store, sleeps, monkeypatch):
    pages, transactions = paged_history([1])
    worker = make_worker(store, FakeRpcClient(pages, transactions, page_size=10), sleeps)
    job, _ = store.add_job(WALLET_A)

    def broken_update(job_id, status, worker_id=None, owner=None):
        raise StoreError("update_job_status failed: database is locked")

    monkeypatch.setattr(store, "update_job_status", broken_update)
    assert worker.run_once() is True
    assert store.get_job(job.id).status == JOB_INDEXING


def test_idle_worker_backs_off_then_resets(store, sleeps):
    pages, transactions = paged_history([1])
    worker = make_worker(store, FakeRpcClient(pages, transactions, page_size=10), sleeps)

    assert worker.run_once() is False
    assert worker.run_once() is False
    assert len(sleeps) == 2
    assert worker.state.idle_polls == 2
    assert worker._backoff.current_ms == 400
    assert STATE_BACKOFF_WAIT in worker.state.history

    store.add_job(WALLET_A)
    assert worker.run_once() is True
    assert worker._backoff.current_ms == 100


def test_claim_error_backs_off(store, sleeps, monkeypatch):
    worker = make_worker(store, FakeRpcClient(page_size=10), sleeps)

    def broken_claim(worker_id, owner=None):
        raise StoreError("claim_pending_job failed: connection refused")

    monkeypatch.setattr(store, "claim_pending_job", broken_claim)
    assert worker.run_once() is False
    assert len(sleeps) == 1


def test_run_stops_on_event(store, sleeps):
    worker = make_worker(store, FakeRpcClient(page_size=10), sleeps)
    stop = threading.Event()
    worker.run(stop, max_iterations=3)
    assert worker.state.idle_polls == 3

    stop.set()
    worker.run(stop)
    assert worker.state.idle_polls == 3


def test_default_owner_is_process_qualified(store, sleeps):
    worker = make_worker(store, FakeRpcClient(page_size=10), sleeps, worker_id=3)
    assert worker.owner == f"{process_tag()}/3"


def test_same_worker_id_in_two_processes_is_distinguishable(store, sleeps):
    pages, transactions = paged_history([1])
    first = make_worker(store, FakeRpcClient(pages, transactions, page_size=10), sleeps, owner="host-a:100/1")
    second = make_worker(store, FakeRpcClient(pages, transactions, page_size=10), sleeps, owner="host-b:200/1")
    job, _ = store.add_job(WALLET_A)

    assert first.run_once() is True
    assert store.get_job(job.id).claimed_by == "host-a:100/1"
    assert second.run_once() is False
    # a worker with the same numeric id in another process cannot finish the job
    store.add_job(WALLET_B)
    claimed = store.claim_pending_job(1, owner="host-b:200/1")
    assert not store.update_job_status(claimed.id, JOB_READY, worker_id=1, owner="host-a:100/1")
    assert store.update_job_status(claimed.id, JOB_READY, worker_id=1, owner="host-b:200/1")
