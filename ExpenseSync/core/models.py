"""Expense records, sync queue entries and their payload variants.

A queue entry's payload is one of three shapes, one per operation kind:

- :class:`InsertPayload` – the full row to insert
- :class:`UpdatePayload` – the target row and the changed columns
- :class:`DeletePayload` – the target row

The payload class is the tag: :attr:`QueueEntry.operation` is derived from it,
so there is no way to build an UPDATE entry carrying an insert-shaped payload.
"""
import datetime
import decimal
import enum
import json
import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Union

DATE_FORMAT = '%Y-%m-%d'


class Category(enum.StrEnum):
    """The closed set of expense categories."""
    Food = 'Food'
    Transport = 'Transport'
    Academics = 'Academics'
    Entertainment = 'Entertainment'
    Misc = 'Misc'


class Operation(enum.StrEnum):
    """Kinds of queued remote operations."""
    Insert = 'INSERT'
    Update = 'UPDATE'
    Delete = 'DELETE'


class Collection(enum.StrEnum):
    """Remote collections (tables) the sync core writes to."""
    Expenses = 'expenses'
    Budgets = 'budgets'


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def new_local_id() -> str:
    """Return a fresh client-side identifier.

    The nanosecond timestamp keeps ids roughly ordered, the random suffix keeps
    ids created within the same tick apart. The id doubles as the idempotency
    token of the remote insert.
    """
    return f'local_{time.time_ns()}_{secrets.token_hex(4)}'


def to_decimal(value: Any) -> decimal.Decimal:
    """Convert a user or remote supplied amount to a Decimal.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f'Invalid amount: {value!r}')
    try:
        amount = decimal.Decimal(str(value))
    except (decimal.InvalidOperation, TypeError) as ex:
        raise ValueError(f'Invalid amount: {value!r}') from ex
    if not amount.is_finite():
        raise ValueError(f'Invalid amount: {value!r}')
    return amount


def to_date(value: Any) -> datetime.date:
    """Convert an ISO ``YYYY-MM-DD`` string, date or datetime to a date."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        return datetime.datetime.strptime(value[:10], DATE_FORMAT).date()
    raise ValueError(f'Invalid date: {value!r}')


@dataclass
class ExpenseRecord:
    """One expense, either confirmed remotely or held locally until synced.

    ``revision`` is bumped on every local edit; the sync engine only marks a
    record synced if the revision it uploaded is still the current one.
    ``attention`` holds the remote store's reason for rejecting the record.
    """
    user_id: str
    amount: decimal.Decimal
    category: Category
    description: str
    date: datetime.date
    local_id: Optional[str] = None
    id: Optional[Any] = None
    created_at: str = field(default_factory=now_str)
    is_synced: bool = False
    revision: int = 0
    attention: Optional[str] = None

    def __post_init__(self) -> None:
        self.amount = to_decimal(self.amount)
        self.category = Category(self.category)
        self.date = to_date(self.date)
        self.description = self.description or ''

    def validate(self) -> None:
        """Check the record is acceptable to the remote store.

        Raises:
            ValueError: If the amount is negative.
        """
        if self.amount < 0:
            raise ValueError(f'Amount must not be negative, got {self.amount}.')

    def to_remote_row(self) -> Dict[str, Any]:
        """Return the row sent to the remote ``expenses`` table."""
        return {
            'local_id': self.local_id,
            'amount': str(self.amount),
            'category': self.category.value,
            'description': self.description,
            'date': self.date.strftime(DATE_FORMAT),
            'is_synced': True,
            'created_at': self.created_at,
        }

    @classmethod
    def from_remote_row(cls, row: Dict[str, Any]) -> 'ExpenseRecord':
        """Build a synced record from a remote ``expenses`` row."""
        return cls(
            user_id=row.get('user_id', ''),
            amount=row['amount'],
            category=row['category'],
            description=row.get('description') or '',
            date=row['date'],
            local_id=row.get('local_id'),
            id=row.get('id'),
            created_at=row.get('created_at') or now_str(),
            is_synced=True,
        )

    def with_changes(self, changes: Dict[str, Any]) -> 'ExpenseRecord':
        """Return a copy with user-editable fields replaced.

        Raises:
            ValueError: If ``changes`` holds a field that cannot be edited.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f'Cannot edit fields: {sorted(unknown)}')
        return replace(self, **changes)


EDITABLE_FIELDS = frozenset({'amount', 'category', 'description', 'date'})


def remote_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Convert user edits into remote column values."""
    result: Dict[str, Any] = {}
    for key, value in changes.items():
        if key == 'amount':
            result[key] = str(to_decimal(value))
        elif key == 'category':
            result[key] = Category(value).value
        elif key == 'date':
            result[key] = to_date(value).strftime(DATE_FORMAT)
        else:
            result[key] = value
    return result


@dataclass(frozen=True)
class Target:
    """Addresses one remote row by its remote id or, before that is known, its local id."""
    id: Optional[Any] = None
    local_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.id is None and not self.local_id:
            raise ValueError('A target needs a remote id or a local id.')

    @property
    def key(self) -> str:
        """Stable key identifying the logical entity for ordering purposes."""
        if self.local_id:
            return self.local_id
        return f'id:{self.id}'

    def match(self) -> Dict[str, Any]:
        """Column filter selecting the target row remotely."""
        if self.id is not None:
            return {'id': self.id}
        return {'local_id': self.local_id}

    @classmethod
    def for_record(cls, record: ExpenseRecord) -> 'Target':
        return cls(id=record.id, local_id=record.local_id)


@dataclass(frozen=True)
class InsertPayload:
    row: Dict[str, Any]


@dataclass(frozen=True)
class UpdatePayload:
    target: Target
    changes: Dict[str, Any]


@dataclass(frozen=True)
class DeletePayload:
    target: Target


Payload = Union[InsertPayload, UpdatePayload, DeletePayload]

_OPERATION_BY_PAYLOAD = {
    InsertPayload: Operation.Insert,
    UpdatePayload: Operation.Update,
    DeletePayload: Operation.Delete,
}


def payload_to_json(payload: Payload) -> str:
    """Serialize a payload for the local queue table."""
    if isinstance(payload, InsertPayload):
        data: Dict[str, Any] = {'row': payload.row}
    elif isinstance(payload, UpdatePayload):
        data = {'target': {'id': payload.target.id, 'local_id': payload.target.local_id},
                'changes': payload.changes}
    elif isinstance(payload, DeletePayload):
        data = {'target': {'id': payload.target.id, 'local_id': payload.target.local_id}}
    else:
        raise TypeError(f'Unknown payload type: {type(payload).__name__}')
    return json.dumps(data, ensure_ascii=False)


def payload_from_json(operation: Union[Operation, str], text: str) -> Payload:
    """Rebuild a payload from its queue table representation.

    Raises:
        ValueError: If the operation is unknown or the JSON does not match its shape.
    """
    operation = Operation(operation)
    data = json.loads(text)
    try:
        if operation == Operation.Insert:
            return InsertPayload(row=dict(data['row']))
        target = Target(id=data['target'].get('id'), local_id=data['target'].get('local_id'))
        if operation == Operation.Update:
            return UpdatePayload(target=target, changes=dict(data['changes']))
        return DeletePayload(target=target)
    except (KeyError, TypeError, AttributeError) as ex:
        raise ValueError(f'Malformed {operation} payload: {text}') from ex


@dataclass
class QueueEntry:
    """A durable record of one pending remote write."""
    collection: str
    payload: Payload
    owner_id: str
    local_id: Optional[str] = None
    created_at: str = field(default_factory=now_str)
    synced: bool = False
    entry_id: Optional[int] = None

    @property
    def operation(self) -> Operation:
        return _OPERATION_BY_PAYLOAD[type(self.payload)]

    @property
    def entity_key(self) -> str:
        """Key of the logical entity this entry operates on."""
        if isinstance(self.payload, InsertPayload):
            return self.local_id or self.payload.row.get('local_id') or f'entry:{self.entry_id}'
        return self.payload.target.key

    def mark_synced(self) -> None:
        """Flag the entry as confirmed remotely. The flag never reverts."""
        self.synced = True


@dataclass
class SyncReport:
    """Summary of one sync cycle, used for the manual sync tally.

    Attributes:
        synced: Remote operations confirmed in this cycle.
        failed: Terminal failures removed from the queue (or flagged) in this cycle.
        retryable: Transient failures kept for the next cycle.
        deferred: Entries not attempted because an earlier operation on the same entity failed.
        skipped: Another cycle was already running.
        offline: The connectivity check reported offline, nothing was attempted.
        auth_required: The session was missing or rejected.
        errors: User-facing messages for terminal failures.
    """
    synced: int = 0
    failed: int = 0
    retryable: int = 0
    deferred: int = 0
    skipped: bool = False
    offline: bool = False
    auth_required: bool = False
    errors: list = field(default_factory=list)

    @property
    def pending(self) -> int:
        return self.retryable + self.deferred
