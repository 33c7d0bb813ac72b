"""
Tests for ExpenseSync.core.cache
(time-bound cache with an injected clock).

Run:
    python -m unittest tests.test_cache
"""
import unittest

from ExpenseSync.core.cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TTLCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.cache = TTLCache(ttl=10, clock=self.clock)

    def test_entries_expire(self):
        self.cache.set('a', 1)
        self.clock.now += 9.9
        self.assertEqual(self.cache.get('a'), 1)
        self.assertIn('a', self.cache)
        self.clock.now += 0.1
        self.assertIsNone(self.cache.get('a'))
        self.assertNotIn('a', self.cache)

    def test_falsy_values_are_cached(self):
        self.cache.set('empty', [])
        self.assertEqual(self.cache.get('empty', 'missing'), [])
        self.assertEqual(self.cache.get('other', 'missing'), 'missing')

    def test_set_restarts_lifetime(self):
        self.cache.set('a', 1)
        self.clock.now += 8
        self.cache.set('a', 2)
        self.clock.now += 8
        self.assertEqual(self.cache.get('a'), 2)

    def test_invalidate_and_clear(self):
        self.cache.set('a', 1)
        self.cache.set('b', 2)
        self.cache.invalidate('a')
        self.cache.invalidate('missing')
        self.assertEqual(len(self.cache), 1)
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)

    def test_ttl_must_be_positive(self):
        with self.assertRaises(ValueError):
            TTLCache(ttl=0)


if __name__ == '__main__':
    unittest.main()
