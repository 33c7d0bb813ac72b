"""Unittest base class and fakes for creating a clean test environment."""
import copy
import logging
import os
import shutil
import threading
import unittest
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from PySide6 import QtCore

from ExpenseSync.core import auth
from ExpenseSync.core import database
from ExpenseSync.settings import lib
from ExpenseSync.status import status

OWNER = 'user-1'
OTHER_OWNER = 'user-2'


class ScriptedOracle:
    """Connectivity oracle answering from a script instead of the network."""

    def __init__(self, online: bool = True, raises: bool = False) -> None:
        self.online = online
        self.raises = raises
        self.calls = 0

    def is_online(self) -> bool:
        self.calls += 1
        if self.raises:
            raise RuntimeError('connectivity check exploded')
        return self.online


class FakeGateway:
    """In-memory stand-in for :class:`ExpenseSync.core.service.RemoteGateway`.

    Honors the unique ``local_id`` constraint of the expenses table and supports
    scripted failures via :meth:`fail`.
    """

    def __init__(self, owner: str = OWNER) -> None:
        self.owner = owner
        self.tables: Dict[str, List[Dict[str, Any]]] = {'expenses': [], 'budgets': []}
        self.calls: List[Tuple[str, str, Any]] = []
        self._script: List[Dict[str, Any]] = []
        self._next_id = 1
        self._lock = threading.Lock()

        # Set to block inserts until released, used to hold a cycle open
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def fail(self, method: str, exc: Callable[[], Exception], times: Optional[int] = 1,
             when: Optional[Callable[[str, Any], bool]] = None, after: bool = False) -> None:
        """Script a failure.

        Args:
            method: 'insert', 'update', 'delete' or 'select'.
            exc: Factory of the exception to raise.
            times: Number of calls to fail, None for every call.
            when: Predicate on (table, payload) selecting the calls to fail.
            after: Apply the change before raising (a lost acknowledgment).
        """
        self._script.append({'method': method, 'exc': exc, 'times': times, 'when': when, 'after': after})

    def _scripted(self, method: str, table: str, payload: Any) -> Optional[Dict[str, Any]]:
        for item in self._script:
            if item['method'] != method:
                continue
            if item['when'] is not None and not item['when'](table, payload):
                continue
            if item['times'] is not None:
                item['times'] -= 1
                if item['times'] <= 0:
                    self._script.remove(item)
            return item
        return None

    @staticmethod
    def _matches(row: Dict[str, Any], match: Dict[str, Any]) -> bool:
        return all(row.get(k) == v for k, v in match.items())

    def rows(self, table: str = 'expenses') -> List[Dict[str, Any]]:
        return [r for r in self.tables[table] if r['user_id'] == self.owner]

    def insert(self, table: str, row: Dict[str, Any], on_conflict: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append(('insert', table, copy.deepcopy(row)))
        if self.gate is not None:
            self.entered.set()
            self.gate.wait(5)

        item = self._scripted('insert', table, row)
        if item and not item['after']:
            raise item['exc']()

        with self._lock:
            row = dict(row, user_id=self.owner)
            existing = None
            if row.get('local_id'):
                existing = next(
                    (r for r in self.tables[table] if r.get('local_id') == row['local_id']), None
                )
            if existing is not None and not on_conflict:
                raise status.ConstraintViolationException('duplicate key value violates unique constraint')
            if existing is not None:
                existing.update(row)
                result = dict(existing)
            else:
                row['id'] = self._next_id
                self._next_id += 1
                self.tables[table].append(row)
                result = dict(row)

        if item:
            raise item['exc']()
        return result

    def update(self, table: str, match: Dict[str, Any], changes: Dict[str, Any]) -> int:
        self.calls.append(('update', table, (dict(match), dict(changes))))
        item = self._scripted('update', table, match)
        if item:
            raise item['exc']()
        count = 0
        for row in self.rows(table):
            if self._matches(row, match):
                row.update(changes)
                count += 1
        return count

    def delete(self, table: str, match: Dict[str, Any]) -> int:
        self.calls.append(('delete', table, dict(match)))
        item = self._scripted('delete', table, match)
        if item:
            raise item['exc']()
        doomed = [r for r in self.rows(table) if self._matches(r, match)]
        self.tables[table] = [r for r in self.tables[table] if r not in doomed]
        return len(doomed)

    def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
               order: Optional[str] = None) -> List[Dict[str, Any]]:
        self.calls.append(('select', table, filters))
        item = self._scripted('select', table, filters)
        if item:
            raise item['exc']()

        ops = {
            'eq': lambda a, b: a == b,
            'gte': lambda a, b: a >= b,
            'lt': lambda a, b: a < b,
            'lte': lambda a, b: a <= b,
        }
        result = []
        for row in self.rows(table):
            ok = True
            for column, value in (filters or {}).items():
                conditions = value if isinstance(value, list) else [value if isinstance(value, tuple) else ('eq', value)]
                ok = ok and all(ops[op](row.get(column), v) for op, v in conditions)
            if ok:
                result.append(dict(row))
        if order:
            column, _, direction = order.partition('.')
            result.sort(key=lambda r: r.get(column), reverse=direction == 'desc')
        return result

    def operations(self, method: Optional[str] = None) -> List[Tuple[str, str, Any]]:
        return [c for c in self.calls if method is None or c[0] == method]


class BaseTestCase(unittest.TestCase):
    """Base test case with a clean config directory, a saved session and fresh fakes.

    Qt standard paths run in test mode (see ``tests/__init__.py``), so the
    config directory lives in a throwaway location.
    """

    config_paths: lib.ConfigPaths

    @classmethod
    def setUpClass(cls) -> None:
        if 'QT_QPA_PLATFORM' not in os.environ:
            os.environ['QT_QPA_PLATFORM'] = 'offscreen'

        if not QtCore.QCoreApplication.instance():
            QtCore.QCoreApplication([])
            logging.debug('QtCore.QCoreApplication initialized for tests.')

    def setUp(self) -> None:
        """Set up a clean config directory and reinitialize the settings."""
        self.config_paths = lib.ConfigPaths()
        config_dir: Path = self.config_paths.config_dir
        if config_dir.exists():
            shutil.rmtree(config_dir)

        lib.settings = lib.SettingsAPI()
        logging.debug('SettingsAPI reinitialized.')

        self.session_manager = auth.SessionManager(session_path=lib.settings.session_path)
        self.session_manager.save_session(
            auth.Session(user_id=OWNER, access_token='access-token', refresh_token='refresh-token')
        )

        self.store = database.LocalStore(lib.settings.db_path)
        self.gateway = FakeGateway()
        self.oracle = ScriptedOracle()

    def tearDown(self) -> None:
        """Remove the test config directory."""
        config_dir: Path = self.config_paths.config_dir
        if config_dir.exists():
            shutil.rmtree(config_dir, ignore_errors=True)
            logging.debug(f'Removed test config directory {config_dir}')

    def process_events(self, msecs: int = 50) -> None:
        """Run the Qt event loop briefly, delivering queued signals."""
        loop = QtCore.QEventLoop()
        QtCore.QTimer.singleShot(msecs, loop.quit)
        loop.exec()
