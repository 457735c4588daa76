import json
import os
import shutil
import signal
import sys
import tempfile
import threading
import time
import unittest
from types import SimpleNamespace
from unittest import mock

from storage import AutoSaver, JsonStore, generate_id, install_shutdown_handlers


class JsonStoreTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.data_dir = os.path.join(self.tmp_dir, 'data')
        self.store = JsonStore(self.data_dir)
        self.store.load_all()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _write(self, name, text):
        with open(os.path.join(self.data_dir, f'{name}.json'), 'w', encoding='utf-8') as f:
            f.write(text)

    def test_generate_id(self):
        ids = {generate_id() for _ in range(500)}
        self.assertEqual(len(ids), 500)
        for record_id in ids:
            self.assertRegex(record_id, r'^[0-9a-z]{17,}$')

    def test_load_missing_files_starts_empty(self):
        self.assertTrue(os.path.isdir(self.data_dir))
        for name in ('users', 'products', 'orders'):
            self.assertEqual(self.store[name].list(), [])
            self.assertFalse(self.store.file_exists(name))

    def test_save_then_reload_is_deep_equal(self):
        self.store.users.create({'email': 'awa@darra.com', 'firstName': 'Awa', 'isAdmin': False})
        self.store.products.create({'name': 'Crème éclat', 'tags': ['bio', 'karité'], 'price': 12.5,
                                    'images': [], 'stock': 0, 'inStock': False})
        self.store.orders.create({'items': [{'productId': 'p1', 'quantity': 2}], 'totalFCFA': 13120})
        self.assertTrue(self.store.save_all())

        reloaded = JsonStore(self.data_dir)
        reloaded.load_all()
        for name in ('users', 'products', 'orders'):
            self.assertEqual(reloaded[name].list(), self.store[name].list())

    def test_files_are_pretty_printed_arrays(self):
        self.store.products.create({'name': 'Savon noir'})
        self.store.save('products')
        with open(self.store.path_for('products'), encoding='utf-8') as f:
            text = f.read()
        self.assertTrue(text.startswith('[\n  {'))
        self.assertIn('Savon noir', text)
        self.assertIsInstance(json.loads(text), list)

    def test_corrupt_file_loads_empty(self):
        self._write('users', '[{"id": "broken"')
        with self.assertLogs('storage', level='ERROR'):
            records = self.store.load('users')
        self.assertEqual(records, [])

    def test_non_array_file_loads_empty(self):
        self._write('orders', '{"id": "x"}')
        with self.assertLogs('storage', level='ERROR'):
            self.assertEqual(self.store.load('orders'), [])

    def test_non_record_entries_are_dropped(self):
        self._write('users', '[1, null, "x", [], {"email": "noid@darra.com"}, {"id": 7}, {"id": "u1", "email": "a@darra.com"}]')
        with self.assertLogs('storage', level='WARNING') as logs:
            records = self.store.load('users')
        self.assertEqual(records, [{'id': 'u1', 'email': 'a@darra.com'}])
        self.assertEqual(len([line for line in logs.output if 'Skipping entry' in line]), 6)
        self.assertFalse(self.store.users.dirty)

    def test_repository_returns_copies(self):
        created = self.store.products.create({'name': 'Huile', 'tags': ['a']})
        created['name'] = 'Changed'
        fetched = self.store.products.get(created['id'])
        fetched['tags'].append('b')
        self.assertEqual(self.store.products.get(created['id']), {'id': created['id'], 'name': 'Huile', 'tags': ['a']})

    def test_update(self):
        created = self.store.users.create({'email': 'a@darra.com', 'isAdmin': False})
        updated = self.store.users.update(created['id'], {'isAdmin': True, 'id': 'hijack'})
        self.assertEqual(updated, {'id': created['id'], 'email': 'a@darra.com', 'isAdmin': True})
        self.assertIsNone(self.store.users.update('missing', {'isAdmin': True}))
        self.assertIsNone(self.store.users.get(''))

    def test_find_and_list_with_predicate(self):
        self.store.products.create({'name': 'A', 'isActive': True})
        self.store.products.create({'name': 'B', 'isActive': False})
        active = self.store.products.list(lambda p: p['isActive'])
        self.assertEqual([p['name'] for p in active], ['A'])
        self.assertEqual(self.store.products.find(lambda p: p['name'] == 'B')['isActive'], False)
        self.assertIsNone(self.store.products.find(lambda p: p['name'] == 'C'))
        self.assertEqual(self.store.products.count(), 2)

    def test_flush_only_writes_dirty_collections(self):
        self.assertFalse(self.store.dirty)
        self.store.orders.create({'status': 'pending'})
        self.assertTrue(self.store.dirty)
        self.assertTrue(self.store.flush())
        self.assertFalse(self.store.dirty)
        self.assertTrue(self.store.file_exists('orders'))
        self.assertFalse(self.store.file_exists('users'))
        self.assertIsNotNone(self.store.last_save)

    def test_failed_save_keeps_memory_and_stays_dirty(self):
        self.store.users.create({'email': 'a@darra.com'})
        with mock.patch('storage.os.replace', side_effect=OSError('disk full')):
            with self.assertLogs('storage', level='ERROR'):
                self.assertFalse(self.store.save('users'))
        self.assertEqual(self.store.users.count(), 1)
        self.assertTrue(self.store.users.dirty)
        self.assertFalse(self.store.file_exists('users'))
        self.assertEqual([f for f in os.listdir(self.data_dir) if f.endswith('.tmp')], [])

    def test_status(self):
        self.store.users.create({'email': 'a@darra.com'})
        self.store.save_all()
        status = self.store.status()
        self.assertEqual(status['mode'], 'Persistance JSON')
        self.assertEqual(status['userCount'], 1)
        self.assertEqual(status['productCount'], 0)
        self.assertEqual(status['files'], {'users': True, 'products': True, 'orders': True})


class AutoSaverTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.store = JsonStore(self.tmp_dir)
        self.store.load_all()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_saves_periodically(self):
        self.store.products.create({'name': 'Savon'})
        saver = AutoSaver(self.store, interval=0.01).start()
        try:
            deadline = time.time() + 5
            while not self.store.file_exists('products') and time.time() < deadline:
                time.sleep(0.01)
        finally:
            saver.stop()
        self.assertTrue(self.store.file_exists('products'))
        self.assertFalse(self.store.dirty)


class ShutdownHandlersTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.store = JsonStore(self.tmp_dir)
        self.store.load_all()
        self.store.users.create({'email': 'a@darra.com'})
        self.previous = (
            signal.getsignal(signal.SIGINT),
            signal.getsignal(signal.SIGTERM),
            sys.excepthook,
            threading.excepthook,
        )

    def tearDown(self):
        sigint, sigterm, sys.excepthook, threading.excepthook = self.previous
        signal.signal(signal.SIGINT, sigint)
        signal.signal(signal.SIGTERM, sigterm)
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_sigint_saves_then_exits(self):
        saver = AutoSaver(self.store, interval=3600).start()
        install_shutdown_handlers(self.store, saver)
        handler = signal.getsignal(signal.SIGINT)
        with self.assertRaises(SystemExit) as ctx:
            handler(signal.SIGINT, None)
        self.assertEqual(ctx.exception.code, 0)
        self.assertTrue(self.store.file_exists('users'))
        self.assertFalse(saver._thread.is_alive())

    def test_uncaught_exception_saves_and_chains(self):
        previous_hook = mock.Mock()
        sys.excepthook = previous_hook
        install_shutdown_handlers(self.store)
        error = RuntimeError('boom')
        with self.assertLogs('storage', level='CRITICAL'):
            sys.excepthook(RuntimeError, error, None)
        self.assertTrue(self.store.file_exists('users'))
        previous_hook.assert_called_once_with(RuntimeError, error, None)

    def test_sigterm_saves_then_exits(self):
        install_shutdown_handlers(self.store)
        handler = signal.getsignal(signal.SIGTERM)
        with self.assertRaises(SystemExit) as ctx:
            handler(signal.SIGTERM, None)
        self.assertEqual(ctx.exception.code, 0)
        self.assertTrue(self.store.file_exists('users'))

    @mock.patch('storage.os._exit')
    def test_uncaught_thread_exception_saves_and_exits(self, mock_exit):
        install_shutdown_handlers(self.store)
        error = RuntimeError('worker died')
        args = SimpleNamespace(exc_type=RuntimeError, exc_value=error, exc_traceback=None,
                               thread=SimpleNamespace(name='worker'))
        with self.assertLogs('storage', level='CRITICAL'):
            threading.excepthook(args)
        self.assertTrue(self.store.file_exists('users'))
        mock_exit.assert_called_once_with(1)

    @mock.patch('storage.os._exit')
    def test_thread_system_exit_is_ignored(self, mock_exit):
        install_shutdown_handlers(self.store)
        args = SimpleNamespace(exc_type=SystemExit, exc_value=SystemExit(0), exc_traceback=None, thread=None)
        threading.excepthook(args)
        self.assertFalse(self.store.file_exists('users'))
        mock_exit.assert_not_called()


if __name__ == '__main__':
    unittest.main()
