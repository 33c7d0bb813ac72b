"""
Integration tests for ExpenseSync.core.sync
(sync cycles against an in-memory remote store).

Run:
    python -m unittest tests.test_sync
"""
import datetime
import threading
from typing import List
from unittest.mock import patch

from ExpenseSync.core import expenses, models, sync
from ExpenseSync.core.signals import signals
from ExpenseSync.settings import lib
from ExpenseSync.status import status
from tests.base import BaseTestCase, OWNER, ScriptedOracle


def server_error() -> Exception:
    return status.ServerErrorException('HTTP 503: unavailable')


def network_error() -> Exception:
    return status.NetworkUnavailableException('connection refused')


def rejected() -> Exception:
    return status.ConstraintViolationException('HTTP 422: check constraint violated')


class SyncEngineTestCase(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.engine = sync.SyncEngine(
            store=self.store,
            gateway=self.gateway,
            oracle=self.oracle,
            session_manager=self.session_manager,
            retry_delay=1,
            max_retries=3,
        )
        # Writes made while offline
        self.offline_api = expenses.ExpenseAPI(
            store=self.store,
            gateway=self.gateway,
            oracle=ScriptedOracle(online=False),
            session_manager=self.session_manager,
        )

    def tearDown(self) -> None:
        self.engine.stop()
        super().tearDown()

    def add_offline(self, amount='10', description='', date='2025-03-10', category='Food') -> models.ExpenseRecord:
        result = self.offline_api.add_expense(amount, category, description, date)
        self.assertTrue(result.success)
        self.assertTrue(result.queued)
        return result.record

    def queue(self, payload: models.Payload, collection: str = models.Collection.Expenses) -> models.QueueEntry:
        local_id = None
        if isinstance(payload, models.InsertPayload):
            local_id = payload.row.get('local_id')
        elif payload.target.local_id:
            local_id = payload.target.local_id
        entry = models.QueueEntry(collection=collection, payload=payload, owner_id=OWNER, local_id=local_id)
        return self.store.append_to_queue(OWNER, entry)

    def remote_row(self, **kwargs) -> dict:
        row = {'local_id': models.new_local_id(), 'amount': '5', 'category': 'Misc',
               'description': '', 'date': '2025-03-01', 'is_synced': True}
        row.update(kwargs)
        return self.gateway.insert('expenses', row)


class SyncCycleTests(SyncEngineTestCase):
    def test_offline_expenses_are_synced(self):
        for i in range(5):
            self.add_offline(amount=str(i + 1), description=f'item {i}')

        report = self.engine.sync()

        self.assertEqual(report.synced, 5)
        self.assertEqual(report.failed, 0)
        self.assertEqual(self.store.load_unsynced_expenses(OWNER), [])
        self.assertEqual(self.store.load_queue(OWNER), [])
        self.assertEqual(len(self.gateway.rows()), 5)
        self.assertEqual(self.store.get_sync_status(OWNER)['total_pending'], 0)
        self.assertTrue(all(r['user_id'] == OWNER for r in self.gateway.rows()))

    def test_recorded_scenario(self):
        result = self.offline_api.add_expense(1500, 'Food', 'Lunch', datetime.date(2025, 3, 10))
        self.assertTrue(result.success)
        self.assertTrue(result.queued)
        self.assertEqual(self.store.get_sync_status(OWNER)['offline_expenses'], 1)
        self.assertEqual(self.store.get_sync_status(OWNER)['pending_operations'], 1)

        report = self.engine.sync()

        self.assertEqual(report.synced, 1)
        rows = self.gateway.rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['amount'], '1500')
        self.assertEqual(rows[0]['category'], 'Food')
        self.assertEqual(rows[0]['description'], 'Lunch')
        self.assertEqual(rows[0]['date'], '2025-03-10')
        self.assertEqual(rows[0]['local_id'], result.record.local_id)
        self.assertEqual(self.store.load_unsynced_expenses(OWNER), [])

    def test_lost_acknowledgment_does_not_duplicate(self):
        record = self.add_offline()
        self.gateway.fail('insert', server_error, after=True)

        report = self.engine.sync()
        self.assertEqual(report.retryable, 1)
        self.assertEqual(len(self.gateway.rows()), 1)
        self.assertEqual(len(self.store.load_unsynced_expenses(OWNER)), 1)
        self.assertEqual(len(self.store.load_queue(OWNER)), 1)

        report = self.engine.sync()
        self.assertEqual(report.synced, 1)
        self.assertEqual(len(self.gateway.rows()), 1)
        self.assertEqual(self.gateway.rows()[0]['local_id'], record.local_id)
        self.assertEqual(self.store.load_queue(OWNER), [])

    def test_replayed_queue_insert_is_idempotent(self):
        row = {'local_id': 'local_replayed', 'amount': '3', 'category': 'Misc',
               'description': '', 'date': '2025-03-02', 'is_synced': True}
        self.queue(models.InsertPayload(row=row))
        self.queue(models.InsertPayload(row=row))

        report = self.engine.sync()
        self.assertEqual(report.synced, 2)
        self.assertEqual(len(self.gateway.rows()), 1)

    def test_operations_on_an_entity_apply_in_order(self):
        local_id = 'local_ordered'
        target = models.Target(local_id=local_id)
        self.queue(models.InsertPayload(row={
            'local_id': local_id, 'amount': '1', 'category': 'Food',
            'description': '', 'date': '2025-03-03', 'is_synced': True,
        }))
        self.queue(models.UpdatePayload(target=target, changes={'amount': '2'}))
        self.queue(models.DeletePayload(target=target))

        report = self.engine.sync()

        self.assertEqual(report.synced, 3)
        self.assertEqual([c[0] for c in self.gateway.calls], ['insert', 'update', 'delete'])
        self.assertEqual(self.gateway.rows(), [])
        self.assertEqual(self.store.load_queue(OWNER), [])

    def test_collections_are_drained_separately(self):
        self.queue(models.InsertPayload(row={'category': 'Food', 'amount': '100', 'month': '2025-03-01'}),
                   collection=models.Collection.Budgets)
        existing = self.remote_row()
        self.queue(models.UpdatePayload(target=models.Target(id=existing['id']), changes={'amount': '6'}))

        report = self.engine.sync()
        self.assertEqual(report.synced, 2)
        self.assertEqual(len(self.gateway.rows('budgets')), 1)
        self.assertEqual(self.gateway.rows()[0]['amount'], '6')

    def test_later_operations_wait_for_a_failed_insert(self):
        local_id = 'local_blocked'
        self.queue(models.InsertPayload(row={
            'local_id': local_id, 'amount': '1', 'category': 'Food',
            'description': '', 'date': '2025-03-03', 'is_synced': True,
        }))
        self.queue(models.UpdatePayload(target=models.Target(local_id=local_id), changes={'amount': '2'}))
        other = self.remote_row()
        self.queue(models.UpdatePayload(target=models.Target(id=other['id']), changes={'amount': '9'}))
        self.gateway.fail('insert', network_error)

        report = self.engine.sync()

        self.assertEqual(report.retryable, 1)
        self.assertEqual(report.deferred, 1)
        self.assertEqual(report.synced, 1)
        self.assertEqual(len(self.gateway.operations('update')), 1)
        self.assertEqual([e.entity_key for e in self.store.load_queue(OWNER)], [local_id, local_id])

        report = self.engine.sync()
        self.assertEqual(report.synced, 2)
        self.assertEqual(self.store.load_queue(OWNER), [])

    def test_poison_entry_does_not_block_siblings(self):
        self.add_offline(description='before')
        poison = self.add_offline(description='poison')
        self.add_offline(description='after')
        self.queue(models.UpdatePayload(target=models.Target(local_id=poison.local_id), changes={'amount': '1'}))
        self.gateway.fail('insert', rejected, times=None, when=lambda table, row: row.get('description') == 'poison')

        messages: List[list] = []
        self.engine.attentionRequired.connect(messages.append)

        report = self.engine.sync()

        self.assertEqual(report.synced, 2)
        self.assertEqual(report.failed, 2)
        self.assertEqual(len(report.errors), 1)
        self.assertEqual(messages, [report.errors])
        self.assertEqual({r['description'] for r in self.gateway.rows()}, {'before', 'after'})
        self.assertEqual(self.store.load_queue(OWNER), [])

        flagged = self.store.get_expense(OWNER, poison.local_id)
        self.assertIn('check constraint', flagged.attention)
        self.assertEqual(self.store.get_sync_status(OWNER)['needs_attention'], 1)
        log = self.store.sync_log(OWNER)
        self.assertEqual(sum(1 for row in log if row['outcome'] == 'failed'), 2)

        # A flagged record is not retried until the user edits it
        calls = len(self.gateway.calls)
        report = self.engine.sync()
        self.assertEqual(len(self.gateway.calls), calls)
        self.assertEqual(report.synced + report.failed, 0)

    def test_update_matching_nothing_is_terminal(self):
        self.queue(models.UpdatePayload(target=models.Target(id=999), changes={'amount': '1'}))
        report = self.engine.sync()
        self.assertEqual(report.failed, 1)
        self.assertEqual(self.store.load_queue(OWNER), [])

    def test_delete_matching_nothing_succeeds(self):
        self.queue(models.DeletePayload(target=models.Target(local_id='local_never_arrived')))
        report = self.engine.sync()
        self.assertEqual(report.synced, 1)
        self.assertEqual(report.failed, 0)
        self.assertEqual(self.store.load_queue(OWNER), [])

    def test_edit_during_upload_is_uploaded_next_cycle(self):
        record = self.add_offline(amount='10')
        self.gateway.gate = threading.Event()

        worker = self.engine.sync_async()
        self.assertTrue(self.gateway.entered.wait(5))
        result = self.offline_api.update_expense(record, {'amount': '12'})
        self.assertTrue(result.queued)
        self.gateway.gate.set()
        self.assertTrue(worker.wait(5000))

        local = self.store.get_expense(OWNER, record.local_id)
        self.assertFalse(local.is_synced)
        self.assertIsNotNone(local.id)
        self.assertEqual(self.gateway.rows()[0]['amount'], '10')

        self.gateway.gate = None
        report = self.engine.sync()
        self.assertEqual(report.synced, 1)
        self.assertEqual(len(self.gateway.rows()), 1)
        self.assertEqual(self.gateway.rows()[0]['amount'], '12')
        self.assertIsNone(self.store.get_expense(OWNER, record.local_id))

    def test_synced_expense_stays_listed(self):
        api = expenses.ExpenseAPI(
            store=self.store, gateway=self.gateway, oracle=self.oracle, session_manager=self.session_manager,
        )
        self.gateway.fail('insert', server_error)
        record = api.add_expense('1500', 'Food', 'Lunch', '2025-03-10').record

        df = api.list_expenses('2025-03')
        self.assertEqual(len(df), 1)
        self.assertFalse(df['is_synced'].iloc[0])

        report = self.engine.sync()
        self.assertEqual(report.synced, 1)
        self.assertIsNone(self.store.get_expense(OWNER, record.local_id))

        df = api.list_expenses('2025-03')
        self.assertEqual(len(df), 1)
        self.assertTrue(df['is_synced'].iloc[0])
        self.assertEqual(df['local_id'].iloc[0], record.local_id)


class SyncGuardTests(SyncEngineTestCase):
    def test_offline_touches_nothing(self):
        self.add_offline()
        self.oracle.online = False

        report = self.engine.sync()

        self.assertTrue(report.offline)
        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(len(self.store.load_queue(OWNER)), 1)

    def test_raising_oracle_counts_as_offline(self):
        self.add_offline()
        self.oracle.raises = True

        report = self.engine.sync()

        self.assertTrue(report.offline)
        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(len(self.store.load_unsynced_expenses(OWNER)), 1)

    def test_concurrent_trigger_is_skipped(self):
        self.add_offline()
        self.gateway.gate = threading.Event()

        worker = self.engine.sync_async()
        self.assertTrue(self.gateway.entered.wait(5))
        self.assertTrue(self.engine.is_running())

        report = self.engine.sync()
        self.assertTrue(report.skipped)

        self.gateway.gate.set()
        self.assertTrue(worker.wait(5000))
        self.process_events()

        self.assertEqual(len(self.gateway.operations('insert')), 1)
        self.assertEqual(len(self.gateway.rows()), 1)
        self.assertFalse(self.engine.is_running())

    def test_missing_session_requires_authentication(self):
        self.add_offline()
        self.session_manager.clear_session()
        requested = []
        self.engine.authenticationRequired.connect(lambda: requested.append(True))

        report = self.engine.sync()

        self.assertTrue(report.auth_required)
        self.assertEqual(requested, [True])
        self.assertEqual(self.gateway.calls, [])

    def test_rejected_session_stops_the_drain(self):
        first = self.add_offline(description='first')
        second = self.add_offline(description='second')
        self.add_offline(description='third')
        self.gateway.fail(
            'insert',
            lambda: status.NotAuthenticatedException('HTTP 401: JWT expired'),
            when=lambda table, row: row.get('local_id') == second.local_id,
        )

        report = self.engine.sync()

        self.assertTrue(report.auth_required)
        self.assertEqual(report.synced, 1)
        self.assertIsNone(self.store.get_expense(OWNER, first.local_id))
        self.assertEqual(len(self.store.load_unsynced_expenses(OWNER)), 2)
        self.assertEqual(len(self.store.load_queue(OWNER)), 2)
        # The third expense was not attempted
        self.assertEqual(len(self.gateway.operations('insert')), 2)

    def test_cycle_failure_retries_up_to_the_cap(self):
        failures: List[str] = []
        self.engine.syncFailed.connect(failures.append)

        with patch.object(self.store, 'verify', side_effect=status.StoreUnavailableException('disk gone')):
            report = self.engine.sync(sync.SyncTrigger.Manual)
            self.assertTrue(report.errors)
            self.assertEqual(self.engine.retries, 1)
            self.assertTrue(self.engine._retry_timer.isActive())
            self.assertEqual(self.engine._retry_timer.interval(), 1000)

            for expected in (2, 3):
                self.engine._retry_timer.stop()
                self.engine.sync(sync.SyncTrigger.Retry)
                self.assertEqual(self.engine.retries, expected)
                self.assertTrue(self.engine._retry_timer.isActive())

            self.engine._retry_timer.stop()
            self.engine.sync(sync.SyncTrigger.Retry)
            self.assertEqual(self.engine.retries, 4)
            self.assertFalse(self.engine._retry_timer.isActive())
            self.assertEqual(len(failures), 1)

        # An external trigger starts counting afresh
        report = self.engine.sync(sync.SyncTrigger.Manual)
        self.assertEqual(report.errors, [])
        self.assertEqual(self.engine.retries, 0)

    def test_sync_never_raises(self):
        with patch.object(self.store, 'load_queue', side_effect=RuntimeError('boom')):
            report = self.engine.sync()
        self.assertIn('boom', report.errors[0])

    def test_unconfigured_remote_is_a_cycle_failure(self):
        record = self.add_offline()
        self.gateway.fail('insert', status.RemoteNotConfiguredException)

        report = self.engine.sync()

        self.assertEqual(self.engine.retries, 1)
        self.assertTrue(report.errors)
        self.assertIsNone(self.store.get_expense(OWNER, record.local_id).attention)


class SyncSchedulingTests(SyncEngineTestCase):
    def test_start_and_stop(self):
        lib.settings.set_section('sync', {
            'interval': 120, 'retry_delay': 1, 'max_retries': 3, 'sync_on_start': False
        })
        self.engine.start()
        self.assertTrue(self.engine._timer.isActive())
        self.assertEqual(self.engine._timer.interval(), 120_000)

        lib.settings.set_section('sync', {
            'interval': 60, 'retry_delay': 1, 'max_retries': 3, 'sync_on_start': False
        })
        self.assertEqual(self.engine._timer.interval(), 60_000)

        self.engine.stop()
        self.assertFalse(self.engine._timer.isActive())
        self.assertEqual(self.oracle.calls, 0)

    def test_sync_on_start(self):
        self.add_offline()
        self.engine.start()
        self.engine.stop()
        self.assertEqual(self.oracle.calls, 1)
        self.assertEqual(len(self.gateway.rows()), 1)

    def test_no_sync_on_start_without_session(self):
        self.session_manager.clear_session()
        self.engine.start()
        self.engine.stop()
        self.assertEqual(self.oracle.calls, 0)

    def test_manual_request(self):
        lib.settings.set_section('sync', {
            'interval': 300, 'retry_delay': 1, 'max_retries': 3, 'sync_on_start': False
        })
        self.add_offline()
        self.engine.start()

        signals.syncRequested.emit()
        self.engine.stop()

        self.assertEqual(self.oracle.calls, 1)
        self.assertEqual(self.store.load_unsynced_expenses(OWNER), [])

        # Stopped engines ignore requests
        signals.syncRequested.emit()
        self.assertEqual(self.oracle.calls, 1)
