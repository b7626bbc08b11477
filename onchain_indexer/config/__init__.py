"""
Configuration management for the on-chain indexer.

Loads and validates settings from environment variables and an optional
.env file. Exposes a single source of truth for all service configuration.
"""

from onchain_indexer.config.env import (
    get_database_url,
    get_rpc_url,
    load_indexer_env,
)
from onchain_indexer.config.settings import IndexerSettings, get_settings

__all__ = [
    "IndexerSettings",
    "get_database_url",
    "get_rpc_url",
    "get_settings",
    "load_indexer_env",
]
