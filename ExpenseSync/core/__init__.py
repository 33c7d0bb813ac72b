"""
Core package for ExpenseSync providing the offline-first synchronization subsystem.

This package includes:

- :mod:`ExpenseSync.core.models` – Expense records, sync queue entries and their payload variants.
- :mod:`ExpenseSync.core.database` – Local SQLite store for offline expenses and the pending-operation queue.
- :mod:`ExpenseSync.core.service` – REST gateway to the remote expenses store with typed error classification.
- :mod:`ExpenseSync.core.network` – Connectivity checks gating remote calls.
- :mod:`ExpenseSync.core.auth` – Persisted session and owner scope.
- :mod:`ExpenseSync.core.sync` – The sync engine draining the queue against the remote store.
- :mod:`ExpenseSync.core.expenses` – The interactive write path with local fallback.
- :mod:`ExpenseSync.core.cache` – Time-bound cache with an injected clock.
- :mod:`ExpenseSync.core.signals` – Application-wide Qt signals.
"""
