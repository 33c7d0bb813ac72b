"""Sync engine draining locally recorded writes into the remote store.

A cycle runs in four steps:

1. Ask the :class:`~ExpenseSync.core.network.ConnectivityOracle`. Offline means
   nothing is touched.
2. Upload every unsynced local expense with an idempotent insert keyed on its
   ``local_id``, so that an insert whose acknowledgment was lost collapses onto
   the row it already created.
3. Drain the remaining queue entries per collection, oldest first. An entity
   whose earlier operation failed transiently has its later operations deferred,
   an entity whose insert was rejected has them failed.
4. Write all results back to the local store in a single transaction.

Each queue entry moves from pending to synced, retryable-failed (kept for the
next cycle) or terminal-failed (removed and recorded in the sync log). Failures
of single entries never abort the cycle. Failures of the cycle itself, such as
an unreadable local store, schedule a bounded number of delayed retries.
"""
import enum
import functools
import logging
import threading
from typing import Dict, List, Optional, Set

from PySide6 import QtCore

from . import auth, database, models, network, service
from ..status import status

# Unique columns making queued inserts idempotent
ON_CONFLICT: Dict[str, str] = {
    models.Collection.Expenses: 'local_id',
    models.Collection.Budgets: 'user_id,category,month',
}


class SyncTrigger(enum.StrEnum):
    """What started a sync cycle."""
    Start = 'start'
    Periodic = 'periodic'
    Manual = 'manual'
    Retry = 'retry'


class _AuthenticationLost(Exception):
    """Internal: stops the drain when the remote store rejects the session."""


class SyncWorker(QtCore.QThread):
    """
    Runs one sync cycle off the calling thread.

    The report is delivered through :attr:`SyncEngine.syncFinished`.
    """

    def __init__(self, engine: 'SyncEngine', trigger: SyncTrigger) -> None:
        super().__init__()
        self.engine = engine
        self.trigger = trigger

    def run(self) -> None:
        self.engine.sync(self.trigger)


class SyncEngine(QtCore.QObject):
    """Reconciles the local store with the remote store.

    Only one cycle runs at a time per engine: a trigger arriving while a cycle
    is active returns a report with ``skipped`` set.

    Args:
        store: Local store holding offline expenses and the queue.
        gateway: Remote store gateway.
        oracle: Connectivity oracle consulted before every cycle.
        session_manager: Source of the owner id.
        interval: Seconds between periodic cycles. Defaults to the ``sync.interval`` setting.
        retry_delay: Seconds before retrying a failed cycle. Defaults to ``sync.retry_delay``.
        max_retries: Retries of a failed cycle before giving up. Defaults to ``sync.max_retries``.
    """
    syncStarted = QtCore.Signal()
    syncFinished = QtCore.Signal(object)  # SyncReport
    syncFailed = QtCore.Signal(str)
    attentionRequired = QtCore.Signal(list)  # List of user-facing messages
    authenticationRequired = QtCore.Signal()
    queueChanged = QtCore.Signal(int)  # Number of pending local operations

    # Internal: hands a retry over to the thread owning the timers
    _retryRequested = QtCore.Signal()

    def __init__(self, store: Optional[database.LocalStore] = None,
                 gateway: Optional[service.RemoteGateway] = None,
                 oracle: Optional[network.ConnectivityOracle] = None,
                 session_manager: Optional[auth.SessionManager] = None,
                 interval: Optional[int] = None,
                 retry_delay: Optional[int] = None,
                 max_retries: Optional[int] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.sessions = session_manager or auth.session_manager
        self.store = store or database.LocalStore()
        self.gateway = gateway or service.RemoteGateway(session_manager=self.sessions)
        self.oracle = oracle or network.ConnectivityOracle()

        self._interval = interval
        self._retry_delay = retry_delay
        self._max_retries = max_retries

        self._lock = threading.Lock()
        self._retries = 0
        self._started = False
        self._workers: List[SyncWorker] = []

        self._timer = QtCore.QTimer(self)
        self._retry_timer = QtCore.QTimer(self)
        self._retry_timer.setSingleShot(True)

        self._connect_signals()

    def _connect_signals(self) -> None:
        from .signals import signals

        self._timer.timeout.connect(functools.partial(self.sync_async, SyncTrigger.Periodic))
        self._retry_timer.timeout.connect(functools.partial(self.sync_async, SyncTrigger.Retry))
        self._retryRequested.connect(self._schedule_retry)

        self.syncStarted.connect(signals.syncStarted)
        self.syncFinished.connect(signals.syncFinished)
        self.syncFailed.connect(signals.syncFailed)
        self.attentionRequired.connect(signals.attentionRequired)
        self.authenticationRequired.connect(signals.authenticationRequested)
        self.queueChanged.connect(signals.queueChanged)

    def _sync_config(self, key: str) -> int:
        from ..settings import lib
        return lib.settings.get_section('sync')[key]

    @property
    def interval(self) -> int:
        return self._interval if self._interval is not None else self._sync_config('interval')

    @property
    def retry_delay(self) -> int:
        return self._retry_delay if self._retry_delay is not None else self._sync_config('retry_delay')

    @property
    def max_retries(self) -> int:
        return self._max_retries if self._max_retries is not None else self._sync_config('max_retries')

    @property
    def retries(self) -> int:
        """Number of consecutive failed cycles since the last success or external trigger."""
        return self._retries

    def is_running(self) -> bool:
        return self._lock.locked()

    def start(self) -> None:
        """Start the periodic trigger and listen to manual sync requests.

        Runs a first cycle right away if a session exists and ``sync.sync_on_start`` is set.
        """
        if self._started:
            return
        from .signals import signals

        signals.syncRequested.connect(self.request_sync)
        signals.configSectionChanged.connect(self._on_config_section_changed)
        self._started = True

        self._timer.start(self.interval * 1000)
        logging.info(f'Sync engine started, syncing every {self.interval}s.')

        if self._sync_config('sync_on_start') and self.sessions.has_session():
            self.sync_async(SyncTrigger.Start)

    def stop(self) -> None:
        """Stop all timers, stop listening to requests and wait for running cycles."""
        self._timer.stop()
        self._retry_timer.stop()

        if self._started:
            from .signals import signals
            signals.syncRequested.disconnect(self.request_sync)
            signals.configSectionChanged.disconnect(self._on_config_section_changed)
            self._started = False

        for worker in list(self._workers):
            worker.wait()
        logging.debug('Sync engine stopped.')

    @QtCore.Slot(str)
    def _on_config_section_changed(self, section: str) -> None:
        if section != 'sync' or not self._timer.isActive():
            return
        logging.debug(f'Sync config changed, syncing every {self.interval}s.')
        self._timer.start(self.interval * 1000)

    @QtCore.Slot()
    def request_sync(self) -> None:
        """Slot for manual sync requests."""
        self.sync_async(SyncTrigger.Manual)

    def sync_async(self, trigger: SyncTrigger = SyncTrigger.Manual) -> SyncWorker:
        """Run a cycle on a worker thread. The report is delivered through :attr:`syncFinished`."""
        worker = SyncWorker(self, trigger)
        self._workers.append(worker)
        worker.finished.connect(self._release_worker)
        worker.start()
        return worker

    @QtCore.Slot()
    def _release_worker(self) -> None:
        worker = self.sender()
        if worker in self._workers:
            self._workers.remove(worker)
        worker.deleteLater()

    @QtCore.Slot()
    def _schedule_retry(self) -> None:
        self._retry_timer.start(self.retry_delay * 1000)

    def sync(self, trigger: SyncTrigger = SyncTrigger.Manual) -> models.SyncReport:
        """Run one sync cycle on the calling thread.

        Never raises: failures are reported through the returned report and the engine's signals.

        Args:
            trigger: What started the cycle. Every trigger but a retry resets the retry counter.

        Returns:
            The cycle's report.
        """
        if not self._lock.acquire(blocking=False):
            logging.debug(f'Sync ({trigger}) skipped, a cycle is already running.')
            return models.SyncReport(skipped=True)

        try:
            if trigger != SyncTrigger.Retry:
                self._retries = 0
            self.syncStarted.emit()
            try:
                report = self._run_cycle()
            except Exception as ex:
                report = self._cycle_failed(ex)
            else:
                if not report.offline and not report.auth_required:
                    self._retries = 0
        finally:
            self._lock.release()

        self.syncFinished.emit(report)
        return report

    def _cycle_failed(self, ex: Exception) -> models.SyncReport:
        """Count a failed cycle and schedule a retry while under the cap."""
        self._retries += 1
        message = f'Sync failed: {ex}'
        if self._retries <= self.max_retries:
            logging.warning(f'{message} Retrying in {self.retry_delay}s ({self._retries}/{self.max_retries}).')
            self._retryRequested.emit()
        else:
            logging.error(f'{message} Giving up after {self.max_retries} retries.')
            self.syncFailed.emit(message)
        return models.SyncReport(errors=[message])

    def _run_cycle(self) -> models.SyncReport:
        report = models.SyncReport()

        try:
            online = self.oracle.is_online()
        except Exception as ex:
            logging.debug(f'Connectivity check raised, assuming offline: {ex}')
            online = False
        if not online:
            logging.debug('Offline, sync postponed.')
            report.offline = True
            return report

        try:
            owner = self.sessions.current_owner()
        except (status.NotAuthenticatedException, status.SessionInvalidException):
            report.auth_required = True
            self.authenticationRequired.emit()
            return report

        self.store.verify()
        unsynced = self.store.load_unsynced_expenses(owner)
        expenses = [r for r in unsynced if r.attention is None]
        flagged = {r.local_id for r in unsynced if r.attention is not None}
        queue = self.store.load_queue(owner)

        changes = database.SyncChanges()
        blocked: Set[str] = set(flagged)
        dead: Set[str] = set()

        try:
            handled = self._push_expenses(expenses, queue, changes, report, blocked, dead)
            self._drain_queue(
                [e for e in queue if e.entry_id not in handled], changes, report, blocked, dead
            )
        except _AuthenticationLost:
            # Keep whatever was confirmed, the remaining entries stay queued
            report.auth_required = True
            self.authenticationRequired.emit()

        self.store.commit_sync(owner, changes)
        self.queueChanged.emit(self.store.get_sync_status(owner)['total_pending'])

        if report.errors:
            self.attentionRequired.emit(list(report.errors))
        if report.synced or report.failed or report.retryable:
            logging.info(
                f'Sync finished: {report.synced} synced, {report.failed} failed, '
                f'{report.pending} pending.'
            )
        return report

    def _call(self, func, *args, **kwargs):
        """Call the gateway, translating a rejected session into :class:`_AuthenticationLost`."""
        try:
            return func(*args, **kwargs)
        except (status.NotAuthenticatedException, status.SessionInvalidException) as ex:
            raise _AuthenticationLost(str(ex)) from ex

    def _push_expenses(self, expenses: List[models.ExpenseRecord], queue: List[models.QueueEntry],
                       changes: database.SyncChanges, report: models.SyncReport,
                       blocked: Set[str], dead: Set[str]) -> Set[int]:
        """Upload unsynced local expenses.

        Returns:
            Ids of the queue entries settled along with the records.
        """
        handled: Set[int] = set()
        for record in expenses:
            entries = [
                e for e in queue
                if e.collection == models.Collection.Expenses
                and e.operation == models.Operation.Insert
                and e.entity_key == record.local_id
            ]
            handled.update(e.entry_id for e in entries)

            try:
                row = self._call(
                    self.gateway.insert,
                    models.Collection.Expenses,
                    record.to_remote_row(),
                    on_conflict=ON_CONFLICT[models.Collection.Expenses],
                )
            except status.ConstraintViolationException as ex:
                message = ex.detail or ex.status_message
                changes.flagged[record.local_id] = message
                dead.add(record.local_id)
                for entry in entries:
                    changes.retire(entry, database.Outcome.Failed, message)
                if not entries:
                    changes.log.append((models.Collection.Expenses, models.Operation.Insert.value,
                                        record.local_id, database.Outcome.Failed, message))
                report.failed += 1
                report.errors.append(f'Expense of {record.amount} on {record.date} was rejected: {message}')
                continue
            except status.BaseStatusException as ex:
                if not ex.retryable:
                    raise
                blocked.add(record.local_id)
                report.retryable += 1
                continue

            changes.synced[record.local_id] = (row.get('id'), record.revision)
            for entry in entries:
                entry.mark_synced()
                changes.retire(entry, database.Outcome.Synced)
            if not entries:
                changes.log.append((models.Collection.Expenses, models.Operation.Insert.value,
                                    record.local_id, database.Outcome.Synced, ''))
            report.synced += 1
        return handled

    def _drain_queue(self, queue: List[models.QueueEntry], changes: database.SyncChanges,
                     report: models.SyncReport, blocked: Set[str], dead: Set[str]) -> None:
        """Apply queue entries per collection in append order."""
        by_collection: Dict[str, List[models.QueueEntry]] = {}
        for entry in sorted(queue, key=lambda e: e.entry_id or 0):
            by_collection.setdefault(entry.collection, []).append(entry)

        for collection, entries in by_collection.items():
            logging.debug(f'Draining {len(entries)} queued operation(s) on "{collection}".')
            for entry in entries:
                key = entry.entity_key
                if key in dead:
                    message = 'A preceding insert of this record was rejected.'
                    changes.retire(entry, database.Outcome.Failed, message)
                    report.failed += 1
                    continue
                if key in blocked:
                    report.deferred += 1
                    continue

                try:
                    self._apply(entry)
                except status.ConstraintViolationException as ex:
                    message = ex.detail or ex.status_message
                    changes.retire(entry, database.Outcome.Failed, message)
                    if entry.operation == models.Operation.Insert:
                        dead.add(key)
                    report.failed += 1
                    report.errors.append(f'{entry.operation} on {collection} was rejected: {message}')
                    continue
                except status.BaseStatusException as ex:
                    if not ex.retryable:
                        raise
                    blocked.add(key)
                    report.retryable += 1
                    continue

                entry.mark_synced()
                changes.retire(entry, database.Outcome.Synced)
                report.synced += 1

    def _apply(self, entry: models.QueueEntry) -> None:
        """Send one queue entry to the remote store.

        Raises:
            status.ConstraintViolationException: If an update matched no row.
        """
        payload = entry.payload
        if isinstance(payload, models.InsertPayload):
            on_conflict = ON_CONFLICT.get(entry.collection)
            if on_conflict == 'local_id' and not payload.row.get('local_id'):
                on_conflict = None
            self._call(self.gateway.insert, entry.collection, payload.row, on_conflict=on_conflict)
        elif isinstance(payload, models.UpdatePayload):
            count = self._call(self.gateway.update, entry.collection, payload.target.match(), payload.changes)
            if count == 0:
                raise status.ConstraintViolationException(f'No remote row matches {payload.target.match()}.')
        elif isinstance(payload, models.DeletePayload):
            count = self._call(self.gateway.delete, entry.collection, payload.target.match())
            if count == 0:
                logging.debug(f'Remote row {payload.target.match()} was already gone.')
