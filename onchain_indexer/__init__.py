"""
On-chain indexer.

Ingests the transaction history of tracked Solana addresses: paginates
signatures, fetches full transactions in rate-limited batches, normalizes
them into balance changes and token transfers, and persists the result.
"""

__version__ = "0.1.0"
