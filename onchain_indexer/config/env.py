"""
Environment variable loading for the indexer.

- SOLANA_RPC_URL: full RPC endpoint (takes precedence)
- HELIUS_API_KEY: Helius API key (used to build the mainnet RPC URL)
- DATABASE_URL: SQLAlchemy URL (PostgreSQL in production)
- INDEXER_DB_PATH: SQLite file used when DATABASE_URL is unset
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# onchain_indexer/config/env.py -> repository root
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"

MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"
HELIUS_MAINNET_URL_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"
DEFAULT_SQLITE_PATH = "indexer.db"


def load_indexer_env() -> None:
    """Load .env from project root. Safe to call multiple times; existing env wins."""
    if _ENV_PATH.is_file():
        load_dotenv(_ENV_PATH, override=False)


def get_rpc_url() -> str:
    """
    Resolve Solana RPC URL from env.
    Order: SOLANA_RPC_URL > HELIUS_API_KEY > public mainnet.
    """
    load_indexer_env()
    url = (os.getenv("SOLANA_RPC_URL") or "").strip()
    if url:
        return url
    key = (os.getenv("HELIUS_API_KEY") or "").strip()
    if key:
        return HELIUS_MAINNET_URL_TEMPLATE.format(key=key)
    return MAINNET_RPC_URL


def get_database_url() -> str:
    """Return DATABASE_URL if set; else a SQLite URL from INDEXER_DB_PATH or the default file."""
    load_indexer_env()
    url = (os.getenv("DATABASE_URL") or "").strip()
    if url:
        return url
    path = (os.getenv("INDEXER_DB_PATH") or "").strip() or DEFAULT_SQLITE_PATH
    return f"sqlite:///{path}"


def redact_url(url: str) -> str:
    """Mask api keys and credentials before a URL is logged."""
    if "api-key=" in url:
        url = url.split("api-key=")[0] + "api-key=***"
    if "@" in url and "://" in url:
        scheme, rest = url.split("://", 1)
        url = f"{scheme}://***@{rest.split('@', 1)[1]}"
    return url
