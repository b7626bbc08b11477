"""
Solana RPC package.

JSON-RPC client (signature pagination, transaction fetch), batch fetcher
with bounded concurrency, wire/data models, and the pure normalizer that
turns raw transactions into balance deltas and token transfers.
"""

from onchain_indexer.solana_rpc.batch import BatchFetcher
from onchain_indexer.solana_rpc.client import RpcClient
from onchain_indexer.solana_rpc.models import (
    BalanceDelta,
    IndexedTransaction,
    RawTransaction,
    SignatureRecord,
    TokenTransferChange,
    TransactionBatchResult,
    TransactionFetchError,
)
from onchain_indexer.solana_rpc.normalizer import normalize, resolve_direction

__all__ = [
    "BalanceDelta",
    "BatchFetcher",
    "IndexedTransaction",
    "RawTransaction",
    "RpcClient",
    "SignatureRecord",
    "TokenTransferChange",
    "TransactionBatchResult",
    "TransactionFetchError",
    "normalize",
    "resolve_direction",
]
