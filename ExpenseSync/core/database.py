"""
Local SQLite store for offline expenses and the pending-operation queue.

Two collections live side by side in one database file:

- ``offline_expenses`` – expenses recorded while the remote store was unreachable,
  partitioned by owner
- ``sync_queue`` – pending remote operations in append order, each row carrying its owner

A third table, ``sync_log``, keeps an audit trail of processed queue entries.

Every public method runs as one scoped transaction that is committed before it
returns. Methods touching both collections (:meth:`LocalStore.record_offline_write`,
:meth:`LocalStore.discard_expense`, :meth:`LocalStore.commit_sync`) do so in the
same transaction, so the two never disagree after a crash.

Loads fail softly: an unreadable store yields an empty result and a warning.
Writes raise :class:`~ExpenseSync.status.status.StoreUnavailableException`.
"""

import contextlib
import enum
import json
import logging
import pathlib
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from . import models
from ..status import status

SCHEMA_VERSION = 1

# Number of attempts at finding a free local id before giving up
LOCAL_ID_ATTEMPTS = 5


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    OfflineExpenses = 'offline_expenses'
    SyncQueue = 'sync_queue'
    SyncLog = 'sync_log'


class Outcome(enum.StrEnum):
    """Result of processing a queue entry, as recorded in the sync log."""
    Synced = 'synced'
    Failed = 'failed'


SCHEMA: Dict[Table, str] = {
    Table.Meta: (
        'meta_id INTEGER PRIMARY KEY, '
        'schema_version INTEGER NOT NULL, '
        'created_at TEXT NOT NULL'
    ),
    Table.OfflineExpenses: (
        'owner_id TEXT NOT NULL, '
        'local_id TEXT NOT NULL, '
        'remote_id TEXT, '
        'amount TEXT NOT NULL, '
        'category TEXT NOT NULL, '
        "description TEXT NOT NULL DEFAULT '', "
        'date TEXT NOT NULL, '
        'created_at TEXT NOT NULL, '
        'is_synced INTEGER NOT NULL DEFAULT 0, '
        'revision INTEGER NOT NULL DEFAULT 0, '
        'attention TEXT, '
        'PRIMARY KEY (owner_id, local_id)'
    ),
    Table.SyncQueue: (
        'entry_id INTEGER PRIMARY KEY AUTOINCREMENT, '
        'owner_id TEXT NOT NULL, '
        'collection TEXT NOT NULL, '
        'operation TEXT NOT NULL, '
        'payload TEXT NOT NULL, '
        'local_id TEXT, '
        'created_at TEXT NOT NULL, '
        'synced INTEGER NOT NULL DEFAULT 0'
    ),
    Table.SyncLog: (
        'log_id INTEGER PRIMARY KEY AUTOINCREMENT, '
        'owner_id TEXT NOT NULL, '
        'collection TEXT NOT NULL, '
        'operation TEXT NOT NULL, '
        'local_id TEXT, '
        'outcome TEXT NOT NULL, '
        'message TEXT, '
        'logged_at TEXT NOT NULL'
    ),
}


@dataclass
class SyncChanges:
    """Everything a sync cycle changed locally, applied by :meth:`LocalStore.commit_sync`.

    Attributes:
        synced: local_id -> (remote id, revision that was uploaded).
        flagged: local_id -> reason the remote store rejected the record.
        done_entries: Queue entry ids to remove (confirmed or terminally failed).
        log: (collection, operation, local_id, outcome, message) audit rows.
    """
    synced: Dict[str, Tuple[Any, int]] = field(default_factory=dict)
    flagged: Dict[str, str] = field(default_factory=dict)
    done_entries: List[int] = field(default_factory=list)
    log: List[Tuple[str, str, Optional[str], Outcome, str]] = field(default_factory=list)

    def retire(self, entry: models.QueueEntry, outcome: Outcome, message: str = '') -> None:
        """Schedule a queue entry for removal and record why."""
        if entry.entry_id is not None and entry.entry_id not in self.done_entries:
            self.done_entries.append(entry.entry_id)
        self.log.append((entry.collection, entry.operation.value, entry.local_id, outcome, message))


def _record_from_row(row: sqlite3.Row) -> models.ExpenseRecord:
    return models.ExpenseRecord(
        user_id=row['owner_id'],
        amount=row['amount'],
        category=row['category'],
        description=row['description'],
        date=row['date'],
        local_id=row['local_id'],
        id=json.loads(row['remote_id']) if row['remote_id'] is not None else None,
        created_at=row['created_at'],
        is_synced=bool(row['is_synced']),
        revision=row['revision'],
        attention=row['attention'],
    )


def _entry_from_row(row: sqlite3.Row) -> models.QueueEntry:
    return models.QueueEntry(
        collection=row['collection'],
        payload=models.payload_from_json(row['operation'], row['payload']),
        owner_id=row['owner_id'],
        local_id=row['local_id'],
        created_at=row['created_at'],
        synced=bool(row['synced']),
        entry_id=row['entry_id'],
    )


class LocalStore:
    """Durable store for one device's offline expenses and pending operations."""

    def __init__(self, db_path: Optional[pathlib.Path] = None) -> None:
        if db_path is None:
            from ..settings import lib
            db_path = lib.settings.db_path
        self.db_path = pathlib.Path(db_path)
        self._schema_ready = False

        try:
            self._initialize_schema_if_needed()
        except status.StoreUnavailableException:
            # Retried lazily on the next access
            logging.error(f'Local store at "{self.db_path}" is not available yet.')

    def connection(self) -> sqlite3.Connection:
        """Return a new autocommit connection to the store.

        Transactions are opened explicitly by :meth:`transaction`.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA journal_mode=WAL')
        conn.execute('PRAGMA synchronous=FULL')
        return conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction, committed on exit and rolled back on error.

        Raises:
            status.StoreUnavailableException: If SQLite fails to open, write or commit.
        """
        try:
            if not self._schema_ready:
                self._initialize_schema_if_needed()
            conn = self.connection()
        except sqlite3.Error as ex:
            raise status.StoreUnavailableException(f'Cannot open "{self.db_path}": {ex}') from ex

        try:
            conn.execute('BEGIN IMMEDIATE')
            yield conn
            conn.execute('COMMIT')
        except sqlite3.Error as ex:
            if conn.in_transaction:
                conn.execute('ROLLBACK')
            raise status.StoreUnavailableException(f'Local store write failed: {ex}') from ex
        except BaseException:
            if conn.in_transaction:
                conn.execute('ROLLBACK')
            raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def _reading(self, what: str) -> Iterator[Optional[sqlite3.Connection]]:
        """Open a read connection; yields None when the store cannot be opened."""
        conn: Optional[sqlite3.Connection] = None
        try:
            if not self._schema_ready:
                self._initialize_schema_if_needed()
            conn = self.connection()
        except (sqlite3.Error, status.StoreUnavailableException) as ex:
            logging.warning(f'Could not read {what} from the local store: {ex}')
            yield None
            return
        try:
            yield conn
        finally:
            conn.close()

    def _initialize_schema_if_needed(self) -> None:
        """Create missing tables and the metadata row.

        Existing data is never dropped: the store may hold expenses that exist nowhere else.

        Raises:
            status.StoreUnavailableException: If the schema cannot be created.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            conn.execute('BEGIN IMMEDIATE')
            for table, columns in SCHEMA.items():
                conn.execute(f'CREATE TABLE IF NOT EXISTS {table.value} ({columns})')
            conn.execute(
                f'CREATE INDEX IF NOT EXISTS idx_queue_owner ON {Table.SyncQueue.value} (owner_id, entry_id)'
            )

            meta_row = conn.execute(
                f'SELECT schema_version FROM {Table.Meta.value} WHERE meta_id=1'
            ).fetchone()
            if meta_row is None:
                conn.execute(
                    f'INSERT INTO {Table.Meta.value} (meta_id, schema_version, created_at) VALUES (1, ?, ?)',
                    (SCHEMA_VERSION, models.now_str())
                )
                logging.info(f'Local store schema created at "{self.db_path}".')
            elif meta_row['schema_version'] != SCHEMA_VERSION:
                logging.warning(
                    f'Local store schema version {meta_row["schema_version"]} differs from {SCHEMA_VERSION}.'
                )
            conn.execute('COMMIT')
            self._schema_ready = True
        except sqlite3.Error as ex:
            if conn is not None and conn.in_transaction:
                conn.execute('ROLLBACK')
            raise status.StoreUnavailableException(f'Schema initialization failed: {ex}') from ex
        finally:
            if conn is not None:
                conn.close()

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        """Check if a table exists using an existing connection."""
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    def verify(self) -> None:
        """Check the store can be opened and holds every table.

        Raises:
            status.StoreUnavailableException: If the store is unreachable or incomplete.
        """
        try:
            if not self._schema_ready:
                self._initialize_schema_if_needed()
            conn = self.connection()
        except sqlite3.Error as ex:
            raise status.StoreUnavailableException(f'Cannot open "{self.db_path}": {ex}') from ex
        try:
            missing = [t.value for t in Table if not self._table_exists_in_conn(conn, t.value)]
        except sqlite3.Error as ex:
            raise status.StoreUnavailableException(f'Cannot inspect "{self.db_path}": {ex}') from ex
        finally:
            conn.close()
        if missing:
            self._schema_ready = False
            raise status.StoreUnavailableException(f'Local store is missing tables: {missing}')

    # Expenses

    def load_unsynced_expenses(self, owner_id: str, include_flagged: bool = True) -> List[models.ExpenseRecord]:
        """Return the owner's local expenses that are not yet confirmed remotely.

        Args:
            owner_id: The owner whose records to load.
            include_flagged: Also return records the remote store rejected.

        Returns:
            Records in creation order, or an empty list if the store is unreadable.
        """
        sql = (
            f'SELECT * FROM {Table.OfflineExpenses.value} '
            'WHERE owner_id=? AND is_synced=0'
        )
        if not include_flagged:
            sql += ' AND attention IS NULL'
        sql += ' ORDER BY created_at, rowid'

        records: List[models.ExpenseRecord] = []
        with self._reading('offline expenses') as conn:
            if conn is None:
                return records
            try:
                rows = conn.execute(sql, (owner_id,)).fetchall()
            except sqlite3.Error as ex:
                logging.warning(f'Could not read offline expenses: {ex}')
                return records

        for row in rows:
            try:
                records.append(_record_from_row(row))
            except (ValueError, TypeError) as ex:
                logging.warning(f'Skipping unreadable offline expense "{row["local_id"]}": {ex}')
        return records

    def get_expense(self, owner_id: str, local_id: str) -> Optional[models.ExpenseRecord]:
        """Return one local record, or None if it does not exist or cannot be read."""
        with self._reading('offline expense') as conn:
            if conn is None:
                return None
            try:
                row = conn.execute(
                    f'SELECT * FROM {Table.OfflineExpenses.value} WHERE owner_id=? AND local_id=?',
                    (owner_id, local_id)
                ).fetchone()
            except sqlite3.Error as ex:
                logging.warning(f'Could not read offline expense "{local_id}": {ex}')
                return None
        if row is None:
            return None
        try:
            return _record_from_row(row)
        except (ValueError, TypeError) as ex:
            logging.warning(f'Unreadable offline expense "{local_id}": {ex}')
            return None

    @staticmethod
    def _insert_expense(conn: sqlite3.Connection, owner_id: str,
                        record: models.ExpenseRecord) -> models.ExpenseRecord:
        """Insert a record, assigning a fresh local id unless the caller supplied one.

        Raises:
            ValueError: If the caller supplied a local id that is already taken.
        """
        record.user_id = owner_id
        generated = not record.local_id
        for _ in range(LOCAL_ID_ATTEMPTS):
            if generated:
                record.local_id = models.new_local_id()
            try:
                conn.execute(
                    f'INSERT INTO {Table.OfflineExpenses.value} '
                    '(owner_id, local_id, remote_id, amount, category, description, date, created_at, '
                    'is_synced, revision, attention) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
                    (
                        owner_id,
                        record.local_id,
                        json.dumps(record.id) if record.id is not None else None,
                        str(record.amount),
                        record.category.value,
                        record.description,
                        record.date.strftime(models.DATE_FORMAT),
                        record.created_at,
                        int(record.is_synced),
                        record.revision,
                        record.attention,
                    )
                )
                return record
            except sqlite3.IntegrityError as ex:
                if not generated:
                    raise ValueError(f'Local id "{record.local_id}" is already in use.') from ex
                logging.debug(f'Local id "{record.local_id}" already taken, generating another.')
        raise sqlite3.IntegrityError('Could not allocate a unique local id.')

    @staticmethod
    def _insert_entry(conn: sqlite3.Connection, owner_id: str, entry: models.QueueEntry) -> models.QueueEntry:
        entry.owner_id = owner_id
        cursor = conn.execute(
            f'INSERT INTO {Table.SyncQueue.value} '
            '(owner_id, collection, operation, payload, local_id, created_at, synced) '
            'VALUES (?, ?, ?, ?, ?, ?, ?)',
            (
                owner_id,
                entry.collection,
                entry.operation.value,
                models.payload_to_json(entry.payload),
                entry.local_id,
                entry.created_at,
                int(entry.synced),
            )
        )
        entry.entry_id = cursor.lastrowid
        return entry

    def append_expense(self, owner_id: str, record: models.ExpenseRecord) -> models.ExpenseRecord:
        """Add one record to the owner's offline expenses.

        A record without a local id gets a fresh one, unique within the owner's scope.
        A record that carries a local id keeps it. This is how the write path
        stores the id it already sent to the remote store as the idempotency token.

        Returns:
            The stored record, with ``local_id`` and ``user_id`` set.

        Raises:
            ValueError: If the supplied local id is already taken.
            status.StoreUnavailableException: If the store cannot be written.
        """
        with self.transaction() as conn:
            return self._insert_expense(conn, owner_id, record)

    def update_expense(self, owner_id: str, record: models.ExpenseRecord) -> models.ExpenseRecord:
        """Persist a local edit, bump the revision and clear any attention flag.

        Raises:
            KeyError: If the record does not exist locally.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                f'UPDATE {Table.OfflineExpenses.value} SET amount=?, category=?, description=?, date=?, '
                'revision=revision+1, attention=NULL WHERE owner_id=? AND local_id=?',
                (
                    str(record.amount),
                    record.category.value,
                    record.description,
                    record.date.strftime(models.DATE_FORMAT),
                    owner_id,
                    record.local_id,
                )
            )
            if cursor.rowcount == 0:
                raise KeyError(f'No local expense "{record.local_id}"')
            row = conn.execute(
                f'SELECT revision FROM {Table.OfflineExpenses.value} WHERE owner_id=? AND local_id=?',
                (owner_id, record.local_id)
            ).fetchone()
        record.revision = row['revision']
        record.attention = None
        return record

    def mark_expense_synced(self, owner_id: str, local_id: str, remote_id: Any = None) -> None:
        """Flag a record as confirmed remotely. Calling it again is a no-op."""
        with self.transaction() as conn:
            conn.execute(
                f'UPDATE {Table.OfflineExpenses.value} SET is_synced=1, attention=NULL, '
                'remote_id=COALESCE(?, remote_id) WHERE owner_id=? AND local_id=?',
                (json.dumps(remote_id) if remote_id is not None else None, owner_id, local_id)
            )

    def remove_expense(self, owner_id: str, local_id: str) -> None:
        """Permanently delete one local record."""
        with self.transaction() as conn:
            conn.execute(
                f'DELETE FROM {Table.OfflineExpenses.value} WHERE owner_id=? AND local_id=?',
                (owner_id, local_id)
            )

    def record_offline_write(self, owner_id: str, record: models.ExpenseRecord,
                             entry: models.QueueEntry) -> Tuple[models.ExpenseRecord, models.QueueEntry]:
        """Store an expense and its INSERT queue entry in a single transaction.

        The entry's local id and row are bound to the record's (possibly freshly assigned) local id.
        """
        with self.transaction() as conn:
            record = self._insert_expense(conn, owner_id, record)
            entry.local_id = record.local_id
            if isinstance(entry.payload, models.InsertPayload):
                entry.payload = models.InsertPayload(row=dict(entry.payload.row, local_id=record.local_id))
            entry = self._insert_entry(conn, owner_id, entry)
        return record, entry

    def discard_expense(self, owner_id: str, local_id: str,
                        follow_up: Optional[models.QueueEntry] = None) -> Optional[models.QueueEntry]:
        """Delete a local record and its pending entries, optionally queueing a follow-up.

        Returns:
            The stored follow-up entry, if one was given.
        """
        with self.transaction() as conn:
            conn.execute(
                f'DELETE FROM {Table.OfflineExpenses.value} WHERE owner_id=? AND local_id=?',
                (owner_id, local_id)
            )
            conn.execute(
                f'DELETE FROM {Table.SyncQueue.value} WHERE owner_id=? AND local_id=? AND synced=0',
                (owner_id, local_id)
            )
            if follow_up is not None:
                follow_up = self._insert_entry(conn, owner_id, follow_up)
        return follow_up

    # Queue

    def load_queue(self, owner_id: str) -> List[models.QueueEntry]:
        """Return the owner's queue entries in append order, or an empty list if unreadable."""
        entries: List[models.QueueEntry] = []
        with self._reading('sync queue') as conn:
            if conn is None:
                return entries
            try:
                rows = conn.execute(
                    f'SELECT * FROM {Table.SyncQueue.value} WHERE owner_id=? ORDER BY entry_id',
                    (owner_id,)
                ).fetchall()
            except sqlite3.Error as ex:
                logging.warning(f'Could not read sync queue: {ex}')
                return entries

        for row in rows:
            try:
                entries.append(_entry_from_row(row))
            except (ValueError, TypeError, json.JSONDecodeError) as ex:
                logging.warning(f'Skipping unreadable queue entry {row["entry_id"]}: {ex}')
        return entries

    def append_to_queue(self, owner_id: str, entry: models.QueueEntry) -> models.QueueEntry:
        """Append one entry to the end of the owner's queue."""
        with self.transaction() as conn:
            return self._insert_entry(conn, owner_id, entry)

    def replace_queue(self, owner_id: str, entries: List[models.QueueEntry]) -> List[models.QueueEntry]:
        """Replace the owner's whole queue, keeping the given order."""
        with self.transaction() as conn:
            conn.execute(f'DELETE FROM {Table.SyncQueue.value} WHERE owner_id=?', (owner_id,))
            return [self._insert_entry(conn, owner_id, entry) for entry in entries]

    # Sync results

    @staticmethod
    def _discard_unreadable(conn: sqlite3.Connection, owner_id: str) -> List[Tuple[str, str, Optional[str], Outcome, str]]:
        """Delete the owner's rows that no longer parse.

        Loads skip such rows, so left in place they would stay pending forever.

        Returns:
            Failed audit rows for the sync log.
        """
        log: List[Tuple[str, str, Optional[str], Outcome, str]] = []

        rows = conn.execute(
            f'SELECT * FROM {Table.OfflineExpenses.value} WHERE owner_id=? AND is_synced=0',
            (owner_id,)
        ).fetchall()
        for row in rows:
            try:
                _record_from_row(row)
            except (ValueError, TypeError) as ex:
                logging.warning(f'Discarding unreadable offline expense "{row["local_id"]}": {ex}')
                conn.execute(
                    f'DELETE FROM {Table.OfflineExpenses.value} WHERE owner_id=? AND local_id=?',
                    (owner_id, row['local_id'])
                )
                log.append((models.Collection.Expenses, models.Operation.Insert.value, row['local_id'],
                             Outcome.Failed, f'Unreadable local record: {ex}'))

        rows = conn.execute(
            f'SELECT * FROM {Table.SyncQueue.value} WHERE owner_id=?', (owner_id,)
        ).fetchall()
        for row in rows:
            try:
                _entry_from_row(row)
            except (ValueError, TypeError) as ex:
                logging.warning(f'Discarding unreadable queue entry {row["entry_id"]}: {ex}')
                conn.execute(f'DELETE FROM {Table.SyncQueue.value} WHERE entry_id=?', (row['entry_id'],))
                log.append((row['collection'], row['operation'], row['local_id'],
                            Outcome.Failed, f'Unreadable queue entry: {ex}'))
        return log

    def commit_sync(self, owner_id: str, changes: SyncChanges) -> int:
        """Apply a sync cycle's results in one transaction and prune settled records.

        A record edited locally after its upload started keeps ``is_synced=0``: its
        revision no longer matches, and the next cycle uploads the edit. Rows that
        cannot be parsed are removed and logged as failed.

        Returns:
            Number of synced records pruned from the store.
        """
        with self.transaction() as conn:
            for local_id, (remote_id, revision) in changes.synced.items():
                conn.execute(
                    f'UPDATE {Table.OfflineExpenses.value} SET remote_id=COALESCE(?, remote_id) '
                    'WHERE owner_id=? AND local_id=?',
                    (json.dumps(remote_id) if remote_id is not None else None, owner_id, local_id)
                )
                cursor = conn.execute(
                    f'UPDATE {Table.OfflineExpenses.value} SET is_synced=1, attention=NULL '
                    'WHERE owner_id=? AND local_id=? AND revision=?',
                    (owner_id, local_id, revision)
                )
                if cursor.rowcount == 0:
                    logging.debug(f'Expense "{local_id}" changed during sync, keeping it unsynced.')

            for local_id, message in changes.flagged.items():
                conn.execute(
                    f'UPDATE {Table.OfflineExpenses.value} SET attention=? '
                    'WHERE owner_id=? AND local_id=? AND is_synced=0',
                    (message or 'Rejected by the remote store', owner_id, local_id)
                )

            conn.executemany(
                f'DELETE FROM {Table.SyncQueue.value} WHERE owner_id=? AND entry_id=?',
                [(owner_id, entry_id) for entry_id in changes.done_entries]
            )

            log = changes.log + self._discard_unreadable(conn, owner_id)

            logged_at = models.now_str()
            conn.executemany(
                f'INSERT INTO {Table.SyncLog.value} '
                '(owner_id, collection, operation, local_id, outcome, message, logged_at) '
                'VALUES (?, ?, ?, ?, ?, ?, ?)',
                [(owner_id, c, op, lid, str(outcome), msg, logged_at) for c, op, lid, outcome, msg in log]
            )

            cursor = conn.execute(
                f'DELETE FROM {Table.OfflineExpenses.value} WHERE owner_id=? AND is_synced=1 '
                f'AND local_id NOT IN (SELECT local_id FROM {Table.SyncQueue.value} '
                'WHERE owner_id=? AND local_id IS NOT NULL)',
                (owner_id, owner_id)
            )
            pruned = cursor.rowcount
        if pruned:
            logging.debug(f'Pruned {pruned} synced expense(s) from the local store.')
        return pruned

    def get_sync_status(self, owner_id: str) -> Dict[str, int]:
        """Count what is still waiting for the remote store.

        Returns:
            Dict with ``offline_expenses``, ``pending_operations``, ``total_pending`` and
            ``needs_attention``. All zero if the store is unreadable.
        """
        result = {'offline_expenses': 0, 'pending_operations': 0, 'total_pending': 0, 'needs_attention': 0}
        with self._reading('sync status') as conn:
            if conn is None:
                return result
            try:
                unsynced, flagged = conn.execute(
                    f'SELECT COUNT(*), COUNT(attention) FROM {Table.OfflineExpenses.value} '
                    'WHERE owner_id=? AND is_synced=0',
                    (owner_id,)
                ).fetchone()
                pending = conn.execute(
                    f'SELECT COUNT(*) FROM {Table.SyncQueue.value} WHERE owner_id=? AND synced=0',
                    (owner_id,)
                ).fetchone()[0]
            except sqlite3.Error as ex:
                logging.warning(f'Could not read sync status: {ex}')
                return result

        result['offline_expenses'] = unsynced
        result['pending_operations'] = pending
        result['total_pending'] = unsynced + pending
        result['needs_attention'] = flagged
        return result

    def sync_log(self, owner_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Return the most recent audit rows, newest first."""
        with self._reading('sync log') as conn:
            if conn is None:
                return []
            try:
                rows = conn.execute(
                    f'SELECT collection, operation, local_id, outcome, message, logged_at '
                    f'FROM {Table.SyncLog.value} WHERE owner_id=? ORDER BY log_id DESC LIMIT ?',
                    (owner_id, limit)
                ).fetchall()
            except sqlite3.Error as ex:
                logging.warning(f'Could not read sync log: {ex}')
                return []
        return [dict(row) for row in rows]

    def clear_all_data(self, owner_id: str) -> None:
        """Remove every local record, queue entry and log row of the owner."""
        with self.transaction() as conn:
            for table in (Table.OfflineExpenses, Table.SyncQueue, Table.SyncLog):
                conn.execute(f'DELETE FROM {table.value} WHERE owner_id=?', (owner_id,))
        logging.info('All local sync data cleared.')
