"""
Core utilities: shared exception taxonomy for the RPC, store and worker layers.
"""

from onchain_indexer.core.exceptions import (
    EmptyPageError,
    IndexerError,
    PipelineAbort,
    RpcError,
    RpcProtocolError,
    RpcTransportError,
    StoreError,
)

__all__ = [
    "EmptyPageError",
    "IndexerError",
    "PipelineAbort",
    "RpcError",
    "RpcProtocolError",
    "RpcTransportError",
    "StoreError",
]
