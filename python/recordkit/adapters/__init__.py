"""Storage adapters."""

from recordkit.adapters.base import StorageAdapter, TransactionContext, connect

__all__ = ["StorageAdapter", "TransactionContext", "connect"]
