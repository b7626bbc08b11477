"""
Address indexing workers.

Each worker claims one pending job at a time, syncs the address's signature
history, fetches and normalizes its transactions, then marks the job ready
or error. Idle workers back off with jitter.
"""

from onchain_indexer.agent_worker.backoff import Backoff
from onchain_indexer.agent_worker.worker import PipelineConfig, WorkerScheduler

__all__ = ["Backoff", "PipelineConfig", "WorkerScheduler"]
