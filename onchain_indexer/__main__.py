"""
Run the ingress API and the worker pool in one process.

Workers run on background threads; uvicorn owns the main thread and its
signal handling. When uvicorn returns, workers are stopped and joined.

Usage: python -m onchain_indexer
"""

from __future__ import annotations

import os
import sys
import threading

import uvicorn

from onchain_indexer.agent_worker.runtime import JOIN_TIMEOUT_SEC, build_client, start_workers
from onchain_indexer.api_server.server import create_app
from onchain_indexer.config import get_settings
from onchain_indexer.database import get_store
from onchain_indexer.indexer_logging import get_logger

logger = get_logger(__name__)


def main() -> int:
    settings = get_settings()
    store = get_store(settings.database_url)
    store.init_db()
    client = build_client(settings)
    stop_event = threading.Event()
    threads = start_workers(settings, store, client, stop_event)
    try:
        logger.info("service_starting", host=settings.api_host, port=settings.api_port, worker_count=settings.worker_count)
        uvicorn.run(
            create_app(store),
            host=settings.api_host,
            port=settings.api_port,
            log_level=os.getenv("LOG_LEVEL", "info").lower(),
        )
        return 0
    except Exception as e:
        logger.exception("service_fatal", error=str(e))
        return 1
    finally:
        stop_event.set()
        for t in threads:
            t.join(timeout=JOIN_TIMEOUT_SEC)
        client.close()
        store.dispose()
        logger.info("service_stopped")


if __name__ == "__main__":
    sys.exit(main())
