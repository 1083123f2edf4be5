"""Service layer for calendar synchronisation."""

from .pipeline import run_account_pipeline
from .scheduler import run_batch_sync, select_due_accounts
from .sync import SyncResult, sync_account
from .triggers import request_account_sync

__all__ = [
    "SyncResult",
    "request_account_sync",
    "run_account_pipeline",
    "run_batch_sync",
    "select_due_accounts",
    "sync_account",
]
