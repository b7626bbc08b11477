"""
Application-level exceptions.

RPC failures are split into transport (network, timeout) and protocol
(envelope, RPC error object, null result) errors; both are retryable.
EmptyPageError is the pagination termination signal. StoreError and
PipelineAbort end the current job but never the worker.
"""

from __future__ import annotations


class IndexerError(Exception):
    """Base class for all indexer errors."""


class RpcError(IndexerError):
    """JSON-RPC call failed. status_code / rpc_code are set when known."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        rpc_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.rpc_code = rpc_code


class RpcTransportError(RpcError):
    """Network failure, timeout or unreadable response body."""


class RpcProtocolError(RpcError):
    """Undecodable envelope, RPC error object, or missing/null result."""


class EmptyPageError(RpcError):
    """A non-initial getSignaturesForAddress page returned zero rows."""


class StoreError(IndexerError):
    """Persistence operation failed."""


class PipelineAbort(IndexerError):
    """Unrecoverable error while processing a job; the job is moved to error."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
