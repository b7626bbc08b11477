"""
Persistent worker pool for address indexing.

Runs as a separate process (CLI entrypoint). Starts `worker_count` independent
workers on threads; each polls the jobs table, claims one pending job at a
time and runs the ingestion pipeline. Idle workers back off with jitter.
Safe shutdown on KeyboardInterrupt/SIGTERM: workers finish their current step
and exit; backoff sleeps wake immediately.

Usage: python -m onchain_indexer.agent_worker.runtime
"""

from __future__ import annotations

import signal
import sys
import threading
from typing import Any

from onchain_indexer.agent_worker.backoff import Backoff
from onchain_indexer.agent_worker.worker import PipelineConfig, WorkerScheduler, process_tag
from onchain_indexer.config import IndexerSettings, get_settings
from onchain_indexer.config.env import redact_url
from onchain_indexer.database import IndexStore, get_store
from onchain_indexer.indexer_logging import get_logger
from onchain_indexer.solana_rpc import BatchFetcher, RpcClient

logger = get_logger(__name__)

JOIN_TIMEOUT_SEC = 5.0


def build_client(settings: IndexerSettings) -> RpcClient:
    return RpcClient(
        settings.rpc_url,
        timeout_sec=settings.request_timeout_sec,
        page_size=settings.signature_page_size,
    )


def build_worker(
    worker_id: int,
    settings: IndexerSettings,
    store: IndexStore,
    client: RpcClient,
    stop_event: threading.Event,
    owner: str | None = None,
) -> WorkerScheduler:
    """Wire one worker around the shared client and store; fetcher and backoff are per worker."""
    fetcher = BatchFetcher(
        client,
        chunk_size=settings.tx_chunk_size,
        concurrency=settings.tx_concurrency,
        chunk_delay_sec=settings.tx_chunk_delay_sec,
        sleep=stop_event.wait,
    )
    backoff = Backoff(
        settings.backoff_min_ms,
        settings.backoff_max_ms,
        settings.backoff_multiplier,
        sleep=stop_event.wait,
    )
    return WorkerScheduler(
        worker_id,
        store,
        client,
        fetcher,
        backoff,
        config=PipelineConfig(
            max_signature_pages=settings.max_signature_pages,
            page_delay_sec=settings.signature_page_delay_sec,
            lease_limit=settings.lease_limit,
        ),
        sleep=stop_event.wait,
        owner=owner,
    )


def start_workers(
    settings: IndexerSettings,
    store: IndexStore,
    client: RpcClient,
    stop_event: threading.Event,
) -> list[threading.Thread]:
    """
    Start one daemon thread per worker. Worker ids are 1..worker_count; the
    owner tag stored on claimed jobs is "hostname:pid/worker_id".
    """
    tag = process_tag()
    threads: list[threading.Thread] = []
    for worker_id in range(1, settings.worker_count + 1):
        worker = build_worker(worker_id, settings, store, client, stop_event, owner=f"{tag}/{worker_id}")
        t = threading.Thread(
            target=worker.run,
            args=(stop_event,),
            name=f"indexer-worker-{worker_id}",
            daemon=True,
        )
        t.start()
        threads.append(t)
    logger.info("runtime_workers_started", worker_count=len(threads), process=tag)
    return threads


def run_pool(settings: IndexerSettings) -> None:
    """
    Run the worker pool until SIGINT/SIGTERM.

    The main thread only waits on the stop event; all work happens in workers.
    """
    store = get_store(settings.database_url)
    store.init_db()
    client = build_client(settings)
    stop_event = threading.Event()

    def request_shutdown(*args: Any, **kwargs: Any) -> None:
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, request_shutdown)
        except (AttributeError, ValueError):
            # not on the main thread, or unsupported platform
            pass

    logger.info(
        "runtime_pool_starting",
        rpc_url=redact_url(settings.rpc_url),
        database_url=redact_url(settings.database_url),
        worker_count=settings.worker_count,
    )
    threads = start_workers(settings, store, client, stop_event)
    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    finally:
        stop_event.set()
        for t in threads:
            t.join(timeout=JOIN_TIMEOUT_SEC)
        client.close()
        store.dispose()
        logger.info("runtime_pool_stopped")


def main() -> int:
    """CLI entrypoint: load settings from env and run the worker pool."""
    try:
        run_pool(get_settings())
        return 0
    except KeyboardInterrupt:
        logger.info("runtime_shutdown_signal")
        return 0
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
