"""
Background workers for Marketsync.

- sync_scheduler: re-queues stale listings, retries due ones and imports
  marketplace orders for every connection with automatic sync on
"""

from marketsync.workers.sync_scheduler import run_sync_scheduler_loop, run_sync_scheduler_once
