"""
Typed indexer settings.

Every knob has a default and can be overridden by the upper-case
environment variable of the same name (e.g. WORKER_COUNT=8).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields

from onchain_indexer.config.env import get_database_url, get_rpc_url, load_indexer_env


@dataclass
class IndexerSettings:
    """Runtime configuration for RPC access, batching, workers and the ingress API."""

    rpc_url: str = field(default_factory=get_rpc_url)
    database_url: str = field(default_factory=get_database_url)
    worker_count: int = 4
    signature_page_size: int = 1000
    max_signature_pages: int = 500
    signature_page_delay_sec: float = 0.125
    tx_chunk_size: int = 10
    tx_concurrency: int = 10
    tx_chunk_delay_sec: float = 1.15
    lease_limit: int = 100
    backoff_min_ms: int = 500
    backoff_max_ms: int = 30_000
    backoff_multiplier: float = 2.0
    request_timeout_sec: float = 30.0
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    def __post_init__(self) -> None:
        if self.worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if not (1 <= self.signature_page_size <= 1000):
            raise ValueError("signature_page_size must be between 1 and 1000")
        if self.max_signature_pages < 1:
            raise ValueError("max_signature_pages must be >= 1")
        if self.tx_chunk_size < 1 or self.tx_concurrency < 1:
            raise ValueError("tx_chunk_size and tx_concurrency must be >= 1")
        if self.lease_limit < 1:
            raise ValueError("lease_limit must be >= 1")
        if self.backoff_min_ms < 1 or self.backoff_max_ms < self.backoff_min_ms:
            raise ValueError("backoff bounds must satisfy 1 <= min <= max")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")


def get_settings() -> IndexerSettings:
    """Build settings from environment (after loading .env); unset variables keep defaults."""
    load_indexer_env()
    overrides: dict[str, object] = {}
    for f in fields(IndexerSettings):
        raw = os.getenv(f.name.upper())
        if raw is None or not raw.strip():
            continue
        raw = raw.strip()
        if f.type in (int, "int"):
            overrides[f.name] = int(raw)
        elif f.type in (float, "float"):
            overrides[f.name] = float(raw)
        else:
            overrides[f.name] = raw
    return IndexerSettings(**overrides)
