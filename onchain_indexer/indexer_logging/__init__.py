"""
Structured logging for the on-chain indexer.

JSON logs with timestamp, event_type and job context (worker_id, job_id, address).
Use get_logger() in all modules.
"""

from onchain_indexer.indexer_logging.logger import (
    bind_job_context,
    clear_job_context,
    get_logger,
    mask_addr,
)

__all__ = ["bind_job_context", "clear_job_context", "get_logger", "mask_addr"]
