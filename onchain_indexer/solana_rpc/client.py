"""
Solana JSON-RPC client.

Two calls are used by the pipeline:

- getSignaturesForAddress: one page (newest first) of signatures strictly
  older than `before`. Transport and protocol failures raise.
- getTransaction (jsonParsed): never raises; every failure mode is folded into
  a TransactionFetchError so the batch layer can treat outcomes uniformly.
"""

from __future__ import annotations

import itertools
import json
import time
from typing import Any

import httpx

from onchain_indexer.core.exceptions import (
    EmptyPageError,
    RpcProtocolError,
    RpcTransportError,
)
from onchain_indexer.indexer_logging import get_logger, mask_addr
from onchain_indexer.solana_rpc.models import (
    FETCH_ERROR_PROTOCOL,
    FETCH_ERROR_TRANSPORT,
    RawTransaction,
    SignatureRecord,
    TransactionFetchError,
)

logger = get_logger(__name__)

MAX_SIGNATURE_PAGE_SIZE = 1000
DEFAULT_TIMEOUT_SEC = 30.0
_BODY_SNIPPET_CHARS = 200


def body_snippet(body: str) -> str:
    """First 200 chars of a response body on one line, for error messages."""
    snippet = body[:_BODY_SNIPPET_CHARS].replace("\r", " ").replace("\n", " ")
    if len(body) > _BODY_SNIPPET_CHARS:
        snippet += "..."
    return snippet


class RpcClient:
    """
    Synchronous JSON-RPC client over one pooled httpx.Client.

    Safe to share between worker threads; request ids come from a per-client counter.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        page_size: int = MAX_SIGNATURE_PAGE_SIZE,
        http_client: httpx.Client | None = None,
        log: Any = None,
    ) -> None:
        """
        Args:
            rpc_url: Solana RPC HTTP endpoint (may embed an api key).
            timeout_sec: HTTP timeout for each RPC request.
            page_size: getSignaturesForAddress limit (1 to 1000).
            http_client: Optional preconfigured client (tests pass one with a MockTransport).
            log: Optional structlog logger; defaults to the module logger.
        """
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        if not (1 <= page_size <= MAX_SIGNATURE_PAGE_SIZE):
            raise ValueError("page_size must be between 1 and 1000")
        self._rpc_url = rpc_url.strip()
        self._page_size = page_size
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(timeout_sec),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        self._ids = itertools.count(1)
        self._log = log or logger

    @property
    def page_size(self) -> int:
        return self._page_size

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _body(self, method: str, params: list[Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    def _post(self, body: dict[str, Any]) -> tuple[int, str]:
        """POST a JSON-RPC body; return (status, text). Raises RpcTransportError."""
        try:
            resp = self._client.post(self._rpc_url, json=body)
            return resp.status_code, resp.text
        except httpx.HTTPError as e:
            raise RpcTransportError(f"request failed: {e}") from e

    @staticmethod
    def _decode_envelope(status: int, text: str, method: str) -> Any:
        """Decode {result?, error?}; return result. Raises RpcProtocolError."""
        try:
            envelope = json.loads(text)
        except ValueError as e:
            raise RpcProtocolError(
                f"failed to decode {method} response: {e}; body={body_snippet(text)}",
                status_code=status,
            ) from e
        if not isinstance(envelope, dict):
            raise RpcProtocolError(
                f"{method} response is not an object; body={body_snippet(text)}",
                status_code=status,
            )
        err = envelope.get("error")
        if err is not None:
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise RpcProtocolError(
                f"rpc error on {method}: {message}",
                status_code=status,
                rpc_code=code if isinstance(code, int) else None,
            )
        if "result" not in envelope:
            raise RpcProtocolError(f"missing result field in {method} response", status_code=status)
        if envelope["result"] is None:
            raise RpcProtocolError(f"{method} result is null", status_code=status)
        return envelope["result"]

    def fetch_signatures_page(
        self,
        address: str,
        before: str | None = None,
    ) -> tuple[list[SignatureRecord], str | None]:
        """
        Fetch one page of signatures for address, newest first, strictly older than before.

        Returns (records, cursor) where cursor is the signature of the last (oldest)
        record, to be passed as `before` on the next call. An empty first page returns
        ([], None); an empty subsequent page raises EmptyPageError.
        """
        opts: dict[str, Any] = {"limit": self._page_size, "maxSupportedTransactionVersion": 0}
        if before is not None:
            opts["before"] = before
        body = self._body("getSignaturesForAddress", [address, opts])
        started = time.monotonic()
        status, text = self._post(body)
        result = self._decode_envelope(status, text, "getSignaturesForAddress")
        if not isinstance(result, list):
            raise RpcProtocolError(
                "getSignaturesForAddress result is not a list", status_code=status
            )
        try:
            records = [SignatureRecord.from_rpc_item(item) for item in result]
        except (KeyError, TypeError, ValueError) as e:
            raise RpcProtocolError(
                f"malformed signature item: {e}", status_code=status
            ) from e

        self._log.debug(
            "signatures_page_received",
            address=mask_addr(address),
            before=mask_addr(before),
            status=status,
            page_len=len(records),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        if not records:
            if before is not None:
                raise EmptyPageError("empty signatures page", status_code=status)
            return [], None
        return records, records[-1].signature

    def fetch_transaction(self, signature: str) -> RawTransaction | TransactionFetchError:
        """Fetch one transaction with jsonParsed encoding. Never raises."""
        body = self._body(
            "getTransaction",
            [signature, {"maxSupportedTransactionVersion": 0, "encoding": "jsonParsed"}],
        )
        started = time.monotonic()
        try:
            status, text = self._post(body)
        except RpcTransportError as e:
            return TransactionFetchError(
                signature=signature, message=e.message, kind=FETCH_ERROR_TRANSPORT
            )
        try:
            result = self._decode_envelope(status, text, "getTransaction")
        except RpcProtocolError as e:
            return TransactionFetchError(
                signature=signature,
                message=e.message,
                kind=FETCH_ERROR_PROTOCOL,
                status_code=e.status_code,
                rpc_code=e.rpc_code,
            )
        try:
            tx = RawTransaction.from_rpc(result)
        except (KeyError, TypeError, ValueError) as e:
            return TransactionFetchError(
                signature=signature,
                message=f"failed to decode transaction result: {e!r}",
                kind=FETCH_ERROR_PROTOCOL,
                status_code=status,
            )
        if tx.signature != signature:
            return TransactionFetchError(
                signature=signature,
                message=f"getTransaction returned signature {mask_addr(tx.signature)}",
                kind=FETCH_ERROR_PROTOCOL,
                status_code=status,
            )
        self._log.debug(
            "transaction_received",
            signature=mask_addr(signature),
            status=status,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return tx
