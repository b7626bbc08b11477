"""
SqlAlchemyStore tests on temporary SQLite: signature dedup and leasing,
idempotent transaction saves, and job claim/status transitions.
"""

from __future__ import annotations

import threading

import pytest

from onchain_indexer.database import JOB_ERROR, JOB_INDEXING, JOB_PENDING, JOB_READY
from onchain_indexer.solana_rpc import RawTransaction, normalize, resolve_direction
from onchain_indexer.solana_rpc.models import SignatureRecord

from rpc_fixtures import (
    WALLET_A,
    WALLET_B,
    native_transfer_result,
    signature_records,
    spl_instruction,
    spl_transfer_result,
    transaction_result,
)


def indexed(result: dict, tracked_owner: str = WALLET_A):
    tx = normalize(RawTransaction.from_rpc(result))
    tx.token_transfers = [resolve_direction(c, tracked_owner) for c in tx.token_transfers]
    return tx


# -----------------------------------------------------------------------------
# Signatures
# -----------------------------------------------------------------------------


def test_append_signatures_dedups(store):
    records = signature_records("s", 3)
    assert store.append_signatures(WALLET_A, records[:2]) == 2
    assert store.append_signatures(WALLET_A, records[1:]) == 1
    assert store.append_signatures(WALLET_A, records) == 0
    assert store.count_signatures(WALLET_A) == 3


def test_append_empty_batch(store):
    assert store.append_signatures(WALLET_A, []) == 0


def test_lease_newest_first_with_limit_and_exclude(store):
    store.append_signatures(WALLET_A, signature_records("s", 5))
    assert store.lease_unprocessed_signatures(WALLET_A, 3) == ["s0", "s1", "s2"]
    assert store.lease_unprocessed_signatures(WALLET_A, 3, exclude={"s0", "s2"}) == ["s1", "s3", "s4"]
    assert store.lease_unprocessed_signatures(WALLET_B, 3) == []


def test_mark_processed_only_named_signatures(store):
    store.append_signatures(WALLET_A, signature_records("s", 4))
    assert store.mark_signatures_processed(WALLET_A, ["s0", "s2"]) == 2
    assert store.mark_signatures_processed(WALLET_A, ["s0"]) == 0
    assert store.lease_unprocessed_signatures(WALLET_A, 10) == ["s1", "s3"]
    assert store.count_signatures(WALLET_A, processed=True) == 2
    assert store.count_signatures(WALLET_A, processed=False) == 2


def test_signature_without_block_time(store):
    store.append_signatures(WALLET_A, [SignatureRecord(signature="late", block_time=None)])
    assert store.lease_unprocessed_signatures(WALLET_A, 1) == ["late"]


# -----------------------------------------------------------------------------
# Transactions and derived rows
# -----------------------------------------------------------------------------


def test_save_transaction_data_is_idempotent(store):
    batch = [indexed(native_transfer_result("n1")), indexed(spl_transfer_result("t1"))]

    first = store.save_transaction_data(WALLET_A, batch)
    assert first.transactions == 2
    assert first.balance_changes == 3
    assert first.token_transfers == 2

    second = store.save_transaction_data(WALLET_A, batch)
    assert (second.transactions, second.balance_changes, second.token_transfers) == (0, 0, 0)
    assert store.count_transactions(WALLET_A) == 2


def test_balance_changes_persisted(store):
    store.save_transaction_data(WALLET_A, [indexed(native_transfer_result("n1", lamports=1_000))])
    changes = dict(store.list_balance_changes(WALLET_A, "n1"))
    assert changes == {WALLET_A: 6_000, WALLET_B: -1_000}


def test_token_transfer_row_fields_and_direction(store):
    store.save_transaction_data(WALLET_A, [indexed(spl_transfer_result("t1", amount="2500000"))])
    [row] = store.list_token_transfers(WALLET_A, "t1")
    assert row["amount_raw"] == 2_500_000
    assert row["decimals"] == 6
    assert row["amount_ui"] == pytest.approx(2.5)
    assert row["direction"] == "out"
    assert row["source_owner"] == WALLET_A
    assert row["destination_owner"] == WALLET_B
    assert row["inner_idx"] is None


def test_amount_raw_keeps_full_precision(store):
    huge = str(2**100 + 1)
    store.save_transaction_data(WALLET_A, [indexed(spl_transfer_result("big", amount=huge))])
    [row] = store.list_token_transfers(WALLET_A)
    assert row["amount_raw"] == 2**100 + 1


def test_top_level_and_inner_rows_are_distinct(store):
    ix = spl_instruction("transfer", {"source": WALLET_A, "destination": WALLET_B, "amount": "5"})
    result = transaction_result(
        signature="nested",
        instructions=[ix],
        inner_instructions=[{"index": 0, "instructions": [ix, ix]}],
    )
    stats = store.save_transaction_data(WALLET_A, [indexed(result)])
    assert stats.token_transfers == 3
    rows = store.list_token_transfers(WALLET_A, "nested")
    assert sorted((r["instruction_idx"], r["inner_idx"] if r["inner_idx"] is not None else -1) for r in rows) == [
        (0, -1),
        (0, 0),
        (0, 1),
    ]


def test_same_transaction_for_two_tracked_owners(store):
    tx = native_transfer_result("shared")
    store.save_transaction_data(WALLET_A, [indexed(tx, WALLET_A)])
    store.save_transaction_data(WALLET_B, [indexed(tx, WALLET_B)])
    assert store.count_transactions(WALLET_A) == 1
    assert store.count_transactions(WALLET_B) == 1
    assert store.list_token_transfers(WALLET_B)[0]["direction"] == "in"


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------


def test_add_job_dedups_on_address(store):
    job, created = store.add_job(WALLET_A)
    assert created is True
    assert job.status == JOB_PENDING
    again, created_again = store.add_job(f"  {WALLET_A} ")
    assert created_again is False
    assert again.id == job.id
    assert store.get_job(job.id).address == WALLET_A
    assert store.get_job(9999) is None


def test_add_job_rejects_empty(store):
    with pytest.raises(ValueError, match="non-empty"):
        store.add_job("   ")


def test_claim_oldest_pending(store):
    assert store.claim_pending_job(1) is None
    first, _ = store.add_job(WALLET_A)
    store.add_job(WALLET_B)

    claimed = store.claim_pending_job(1)
    assert claimed.id == first.id
    assert claimed.status == JOB_INDEXING
    assert claimed.worker_id == 1

    second = store.claim_pending_job(2)
    assert second.address == WALLET_B
    assert store.claim_pending_job(3) is None


def test_concurrent_claim_exactly_one_winner(store):
    job, _ = store.add_job(WALLET_A)
    workers = 8
    barrier = threading.Barrier(workers)
    results: list = []
    errors: list = []

    def claim(worker_id: int) -> None:
        barrier.wait()
        try:
            results.append(store.claim_pending_job(worker_id))
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)

    threads = [threading.Thread(target=claim, args=(i,)) for i in range(1, workers + 1)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].id == job.id
    assert store.get_job(job.id).worker_id == winners[0].worker_id


def test_update_job_status_guards(store):
    job, _ = store.add_job(WALLET_A)
    # pending jobs cannot be finished
    assert store.update_job_status(job.id, JOB_READY) is False

    store.claim_pending_job(1)
    assert store.update_job_status(job.id, JOB_READY, worker_id=2) is False
    assert store.update_job_status(job.id, JOB_READY, worker_id=1) is True
    assert store.get_job(job.id).status == JOB_READY
    assert store.update_job_status(job.id, JOB_ERROR, worker_id=1) is False
    assert store.get_job(job.id).status == JOB_READY


def test_claim_records_owner_and_guards_on_it(store):
    job, _ = store.add_job(WALLET_A)
    claimed = store.claim_pending_job(1, owner="indexer-1:4242/1")
    assert claimed.claimed_by == "indexer-1:4242/1"
    assert store.update_job_status(job.id, JOB_READY, worker_id=1, owner="indexer-2:4242/1") is False
    assert store.update_job_status(job.id, JOB_READY, worker_id=1, owner="indexer-1:4242/1") is True


def test_update_job_status_rejects_unknown_status(store):
    job, _ = store.add_job(WALLET_A)
    with pytest.raises(ValueError):
        store.update_job_status(job.id, "done")


def test_job_to_dict(store):
    job, _ = store.add_job(WALLET_A)
    d = job.to_dict()
    assert d["job_id"] == job.id
    assert d["status"] == JOB_PENDING
    assert set(d) == {"job_id", "address", "status", "worker_id", "claimed_by", "created_at", "updated_at"}


def test_rows_keyed_by_requested_signature(store):
    tx = normalize(RawTransaction.from_rpc(native_transfer_result("sigX")), signature="sigX")
    assert tx.signature == "sigX"
    store.save_transaction_data(WALLET_A, [tx])
    assert store.list_balance_changes(WALLET_A, "sigX")
