"""
Batch transaction fetcher: bounded-concurrency getTransaction over many signatures.

Signatures are fetched in fixed-size chunks. Within a chunk up to
`concurrency` requests run in parallel on a thread pool; every outcome is
collected, so one failure never cancels its siblings. After each chunk the
fetcher sleeps a fixed delay (static rate limit for the RPC provider).
Failed signatures are reported, not raised: the caller leaves them
unprocessed so a later pass retries them.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from onchain_indexer.indexer_logging import get_logger, mask_addr
from onchain_indexer.solana_rpc.client import RpcClient
from onchain_indexer.solana_rpc.models import (
    FETCH_ERROR_PROTOCOL,
    FETCH_ERROR_TRANSPORT,
    RawTransaction,
    TransactionBatchResult,
    TransactionFetchError,
)
from onchain_indexer.solana_rpc.normalizer import normalize

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 10
DEFAULT_CONCURRENCY = 10
DEFAULT_CHUNK_DELAY_SEC = 1.15


def chunked(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchFetcher:
    """Fetch and normalize many transactions with per-signature failure isolation."""

    def __init__(
        self,
        client: RpcClient,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        chunk_delay_sec: float = DEFAULT_CHUNK_DELAY_SEC,
        sleep: Callable[[float], object] = time.sleep,
        log: Any = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._client = client
        self._chunk_size = chunk_size
        self._concurrency = min(concurrency, chunk_size)
        self._chunk_delay_sec = max(0.0, chunk_delay_sec)
        self._sleep = sleep
        self._log = log or logger

    def _fetch_one(self, signature: str) -> RawTransaction | TransactionFetchError:
        try:
            outcome = self._client.fetch_transaction(signature)
        except Exception as e:
            # fetch_transaction folds its own failures; this only guards unexpected bugs
            return TransactionFetchError(
                signature=signature,
                message=f"unexpected fetch failure: {e!r}",
                kind=FETCH_ERROR_TRANSPORT,
            )
        if isinstance(outcome, RawTransaction) and outcome.signature != signature:
            return TransactionFetchError(
                signature=signature,
                message=f"response carries signature {mask_addr(outcome.signature)}",
                kind=FETCH_ERROR_PROTOCOL,
            )
        return outcome

    def fetch_many(self, signatures: list[str]) -> TransactionBatchResult:
        """
        Fetch every signature, chunk by chunk, then normalize the successes.

        Successes land in `succeeded` / `processed_signatures`; failures in
        `errors` / `failed_signatures`. Never raises for per-signature failures.
        """
        result = TransactionBatchResult()
        if not signatures:
            return result
        raw_successes: list[tuple[str, RawTransaction]] = []

        with ThreadPoolExecutor(
            max_workers=self._concurrency, thread_name_prefix="tx-fetch"
        ) as executor:
            for chunk_index, chunk in enumerate(chunked(list(signatures), self._chunk_size)):
                started = time.monotonic()
                outcomes = list(executor.map(self._fetch_one, chunk))
                chunk_success = 0
                chunk_failed = 0
                first_error: TransactionFetchError | None = None
                for signature, outcome in zip(chunk, outcomes):
                    if isinstance(outcome, TransactionFetchError):
                        chunk_failed += 1
                        first_error = first_error or outcome
                        result.failed_signatures.append(signature)
                        result.errors.append(outcome)
                    else:
                        chunk_success += 1
                        raw_successes.append((signature, outcome))
                        result.processed_signatures.append(signature)

                self._log.info(
                    "tx_chunk_received",
                    chunk_index=chunk_index,
                    chunk_len=len(chunk),
                    chunk_success=chunk_success,
                    chunk_failed=chunk_failed,
                    total_success=len(raw_successes),
                    total_failed=len(result.failed_signatures),
                    elapsed_ms=int((time.monotonic() - started) * 1000),
                )
                if first_error is not None:
                    self._log.warning(
                        "tx_chunk_partial_failure",
                        chunk_index=chunk_index,
                        signature=mask_addr(first_error.signature),
                        kind=first_error.kind,
                        status_code=first_error.status_code,
                        rpc_code=first_error.rpc_code,
                        error=first_error.message,
                    )
                self._sleep(self._chunk_delay_sec)

        total_transfers = 0
        total_token_changes = 0
        for signature, raw in raw_successes:
            indexed = normalize(raw, self._log, signature=signature)
            total_transfers += len(indexed.balance_deltas)
            total_token_changes += len(indexed.token_transfers)
            result.succeeded.append(indexed)
        self._log.debug(
            "tx_batch_normalized",
            total_transfers=total_transfers,
            total_token_changes=total_token_changes,
        )

        if result.errors:
            first = result.errors[0]
            self._log.warning(
                "tx_batch_failures_left_for_retry",
                failed_total=len(result.errors),
                success_total=len(result.succeeded),
                signature=mask_addr(first.signature),
                status_code=first.status_code,
                rpc_code=first.rpc_code,
                error=first.message,
            )
        return result
