"""Application-wide Qt signals for ExpenseSync.

This module provides the :data:`signals` singleton used to decouple the sync
core from whatever host application displays its results:

    - syncRequested: ask the sync engine for a cycle (manual sync, app foreground)
    - syncStarted / syncFinished / syncFailed: cycle lifecycle
    - expenseQueued: an expense was stored locally instead of remotely
    - queueChanged: number of pending local operations changed
    - authenticationRequested: the session is missing or was rejected
    - attentionRequired: the remote store rejected records, they need user action
    - configSectionChanged: a config.json section was replaced
    - error: user-facing error message
"""
import logging

from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for sync lifecycle and error events."""
    syncRequested = QtCore.Signal()
    syncStarted = QtCore.Signal()
    syncFinished = QtCore.Signal(object)  # SyncReport
    syncFailed = QtCore.Signal(str)

    expenseQueued = QtCore.Signal(object)  # ExpenseRecord
    queueChanged = QtCore.Signal(int)

    authenticationRequested = QtCore.Signal()
    attentionRequired = QtCore.Signal(list)  # List of user-facing messages

    configSectionChanged = QtCore.Signal(str)

    error = QtCore.Signal(str)

    def __init__(self):
        super().__init__()
        self._connect_signals()

    def _connect_signals(self):
        self.authenticationRequested.connect(
            lambda: logging.warning('Authentication requested: sign in again to resume syncing.')
        )


signals = Signals()
