"""
The interactive write path.

User actions go to the remote store first when the device is online. When the
remote write fails, or the device is offline, the change is kept in the local
store together with the queue entry that the sync engine later replays:

    - a new expense is stored locally with its INSERT entry, atomically
    - an edit of a local-only expense changes the local record
    - a delete of a local-only expense discards it and queues a DELETE keyed on
      its ``local_id``, cleaning up a remote row left by an unacknowledged insert
    - edits and deletes of remote expenses are queued as UPDATE and DELETE entries

Every write returns a :class:`WriteResult` instead of raising.
"""
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import pandas as pd
from dateutil.relativedelta import relativedelta

from . import auth, cache, database, models, network, service
from .signals import signals
from ..status import status

#: Seconds a month of remote expenses is served from the cache
CACHE_TTL: float = 60.0

COLUMNS: List[str] = [
    'id',
    'local_id',
    'date',
    'amount',
    'category',
    'description',
    'created_at',
    'is_synced',
    'attention',
]


@dataclass
class WriteResult:
    """Outcome of a user write.

    Attributes:
        success: The change was accepted remotely or stored locally.
        queued: The change is stored locally and waits for the sync engine.
        record: The written record, if any.
        error: User-facing reason for a failure.
    """
    success: bool
    queued: bool = False
    record: Optional[models.ExpenseRecord] = None
    error: Optional[str] = None


def month_bounds(month: Union[str, datetime.date]) -> tuple:
    """Return the first day of the month and the first day of the next month.

    Args:
        month: A date within the month, or a ``YYYY-MM`` string.
    """
    if isinstance(month, str):
        month = datetime.datetime.strptime(month[:7], '%Y-%m').date()
    elif isinstance(month, datetime.datetime):
        month = month.date()
    start = month.replace(day=1)
    return start, start + relativedelta(months=1)


class ExpenseAPI:
    """Records, edits, deletes and lists the signed-in user's expenses.

    Args:
        store: Local store used as the fallback.
        gateway: Remote store gateway.
        oracle: Connectivity oracle consulted before remote writes.
        session_manager: Source of the owner id.
        query_cache: Cache for remote month queries.
    """

    def __init__(self, store: Optional[database.LocalStore] = None,
                 gateway: Optional[service.RemoteGateway] = None,
                 oracle: Optional[network.ConnectivityOracle] = None,
                 session_manager: Optional[auth.SessionManager] = None,
                 query_cache: Optional[cache.TTLCache] = None) -> None:
        self.sessions = session_manager or auth.session_manager
        self.store = store or database.LocalStore()
        self.gateway = gateway or service.RemoteGateway(session_manager=self.sessions)
        self.oracle = oracle or network.ConnectivityOracle()
        self.cache = query_cache or cache.TTLCache(ttl=CACHE_TTL)

        signals.syncFinished.connect(self._on_sync_finished)

    def _on_sync_finished(self, report: models.SyncReport) -> None:
        # Synced records are pruned locally, so cached remote months are stale
        if report.synced:
            self.cache.clear()

    def _is_online(self) -> bool:
        try:
            return self.oracle.is_online()
        except Exception as ex:
            logging.debug(f'Connectivity check raised, assuming offline: {ex}')
            return False

    def _queued(self, owner: str) -> None:
        self.cache.clear()
        signals.queueChanged.emit(self.store.get_sync_status(owner)['total_pending'])

    def add_expense(self, amount: Any, category: Union[str, models.Category], description: str = '',
                    date: Union[str, datetime.date, None] = None) -> WriteResult:
        """Record a new expense, remotely if possible and locally otherwise.

        Args:
            amount: Non-negative amount.
            category: One of :class:`~ExpenseSync.core.models.Category`.
            description: Free text.
            date: Date of the expense. Defaults to today.

        Returns:
            A :class:`WriteResult`. ``success`` is False only if the input is invalid
            or neither the remote nor the local store accepted the expense.
        """
        try:
            owner = self.sessions.current_owner()
        except (status.NotAuthenticatedException, status.SessionInvalidException) as ex:
            return WriteResult(success=False, error=ex.status_message)

        try:
            record = models.ExpenseRecord(
                user_id=owner,
                amount=amount,
                category=category,
                description=description,
                date=date or datetime.date.today(),
                local_id=models.new_local_id(),
            )
            record.validate()
        except ValueError as ex:
            return WriteResult(success=False, error=str(ex))

        if self._is_online():
            try:
                row = self.gateway.insert(
                    models.Collection.Expenses, record.to_remote_row(), on_conflict='local_id'
                )
            except status.BaseStatusException as ex:
                logging.info(f'Remote insert failed, keeping the expense locally: {ex}')
            else:
                self.cache.clear()
                return WriteResult(success=True, record=models.ExpenseRecord.from_remote_row(row))

        # The local id doubles as the idempotency token if the remote insert did commit
        entry = models.QueueEntry(
            collection=models.Collection.Expenses,
            payload=models.InsertPayload(row=record.to_remote_row()),
            owner_id=owner,
            local_id=record.local_id,
        )
        try:
            record, _ = self.store.record_offline_write(owner, record, entry)
        except status.StoreUnavailableException as ex:
            return WriteResult(success=False, error=ex.status_message)
        except ValueError as ex:
            return WriteResult(success=False, error=str(ex))

        logging.info(f'Expense "{record.local_id}" stored offline.')
        signals.expenseQueued.emit(record)
        self._queued(owner)
        return WriteResult(success=True, queued=True, record=record)

    def update_expense(self, record: models.ExpenseRecord, changes: Dict[str, Any]) -> WriteResult:
        """Edit an expense.

        Local-only expenses are edited in place; the sync engine uploads the
        latest revision. Remote expenses are updated remotely, or an UPDATE is
        queued if that fails.
        """
        try:
            owner = self.sessions.current_owner()
        except (status.NotAuthenticatedException, status.SessionInvalidException) as ex:
            return WriteResult(success=False, error=ex.status_message)

        try:
            updated = record.with_changes(changes)
            updated.validate()
            remote = models.remote_changes(changes)
        except ValueError as ex:
            return WriteResult(success=False, error=str(ex))

        if not record.is_synced and record.local_id:
            try:
                updated = self.store.update_expense(owner, updated)
            except KeyError:
                # Synced and pruned since it was listed, it only exists remotely now
                logging.debug(f'Expense "{record.local_id}" is no longer local, updating it remotely.')
            except status.StoreUnavailableException as ex:
                return WriteResult(success=False, error=ex.status_message)
            else:
                self._queued(owner)
                return WriteResult(success=True, queued=True, record=updated)

        target = models.Target.for_record(record)
        if self._is_online():
            try:
                count = self.gateway.update(models.Collection.Expenses, target.match(), remote)
            except status.BaseStatusException as ex:
                logging.info(f'Remote update failed, queueing it: {ex}')
            else:
                self.cache.clear()
                if count == 0:
                    return WriteResult(success=False, record=record, error='The expense no longer exists.')
                return WriteResult(success=True, record=updated)

        entry = models.QueueEntry(
            collection=models.Collection.Expenses,
            payload=models.UpdatePayload(target=target, changes=remote),
            owner_id=owner,
            local_id=record.local_id,
        )
        try:
            self.store.append_to_queue(owner, entry)
        except status.StoreUnavailableException as ex:
            return WriteResult(success=False, record=record, error=ex.status_message)
        self._queued(owner)
        return WriteResult(success=True, queued=True, record=updated)

    def delete_expense(self, record: models.ExpenseRecord) -> WriteResult:
        """Delete an expense, locally, remotely or by queueing a DELETE."""
        try:
            owner = self.sessions.current_owner()
        except (status.NotAuthenticatedException, status.SessionInvalidException) as ex:
            return WriteResult(success=False, error=ex.status_message)

        if not record.is_synced and record.local_id:
            follow_up = models.QueueEntry(
                collection=models.Collection.Expenses,
                payload=models.DeletePayload(target=models.Target(local_id=record.local_id)),
                owner_id=owner,
                local_id=record.local_id,
            )
            try:
                self.store.discard_expense(owner, record.local_id, follow_up)
            except status.StoreUnavailableException as ex:
                return WriteResult(success=False, record=record, error=ex.status_message)
            self._queued(owner)
            return WriteResult(success=True, queued=True, record=record)

        target = models.Target.for_record(record)
        if self._is_online():
            try:
                self.gateway.delete(models.Collection.Expenses, target.match())
            except status.BaseStatusException as ex:
                logging.info(f'Remote delete failed, queueing it: {ex}')
            else:
                self.cache.clear()
                return WriteResult(success=True, record=record)

        entry = models.QueueEntry(
            collection=models.Collection.Expenses,
            payload=models.DeletePayload(target=target),
            owner_id=owner,
            local_id=record.local_id,
        )
        try:
            self.store.append_to_queue(owner, entry)
        except status.StoreUnavailableException as ex:
            return WriteResult(success=False, record=record, error=ex.status_message)
        self._queued(owner)
        return WriteResult(success=True, queued=True, record=record)

    def _remote_month(self, owner: str, start: datetime.date, end: datetime.date) -> List[models.ExpenseRecord]:
        key = (owner, start.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if not self._is_online():
            return []
        try:
            rows = self.gateway.select(
                models.Collection.Expenses,
                filters={'date': [('gte', start.isoformat()), ('lt', end.isoformat())]},
                order='date.desc',
            )
        except status.BaseStatusException as ex:
            logging.warning(f'Could not load remote expenses, showing local ones only: {ex}')
            return []

        records = []
        for row in rows:
            try:
                records.append(models.ExpenseRecord.from_remote_row(row))
            except (KeyError, ValueError) as ex:
                logging.warning(f'Skipping malformed remote expense {row.get("id")}: {ex}')
        self.cache.set(key, records)
        return records

    def list_expenses(self, month: Union[str, datetime.date]) -> pd.DataFrame:
        """Return the month's expenses, remote and not yet synced, newest first.

        Args:
            month: A date within the month, or a ``YYYY-MM`` string.

        Returns:
            A DataFrame with the :data:`COLUMNS` columns. Empty if nobody is signed in.
        """
        try:
            owner = self.sessions.current_owner()
        except (status.NotAuthenticatedException, status.SessionInvalidException):
            return pd.DataFrame(columns=COLUMNS)

        start, end = month_bounds(month)
        remote = self._remote_month(owner, start, end)
        remote_ids = {r.local_id for r in remote if r.local_id}

        local = [
            r for r in self.store.load_unsynced_expenses(owner)
            if start <= r.date < end and r.local_id not in remote_ids
        ]

        df = pd.DataFrame(
            [
                {
                    'id': r.id,
                    'local_id': r.local_id,
                    'date': pd.Timestamp(r.date),
                    'amount': float(r.amount),
                    'category': r.category.value,
                    'description': r.description,
                    'created_at': r.created_at,
                    'is_synced': r.is_synced,
                    'attention': r.attention,
                }
                for r in remote + local
            ],
            columns=COLUMNS,
        )
        if df.empty:
            return df
        return df.sort_values(['date', 'created_at'], ascending=False, ignore_index=True)

    def sync_status(self) -> Dict[str, int]:
        """Return the signed-in user's pending counts, see :meth:`LocalStore.get_sync_status`."""
        try:
            owner = self.sessions.current_owner()
        except (status.NotAuthenticatedException, status.SessionInvalidException):
            return {'offline_expenses': 0, 'pending_operations': 0, 'total_pending': 0, 'needs_attention': 0}
        return self.store.get_sync_status(owner)
