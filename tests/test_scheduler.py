"""Tests for the sync scheduler driven through LightDatabase"""

import json
import tempfile
import threading
import unittest
from pathlib import Path

from PySide6 import QtCore

from qt_support import FakeClock, FakeHttp, ensure_app, wait_until

from lightdb.database import LightDatabase
from lightdb.errors import ConfigError, ConfigErrorKind, FetchError, FetchErrorKind
from lightdb.scheduler import ForceResult, SchedulerState, SyncCancelled
from lightdb.settings import DEFAULT_DATABASE_URL, FetchMode

TTL = 28800
GOOD = json.dumps({"version": 3, "lights": [{"type": 8, "image": "https://example.com/8.png"}]}).encode()
NEWER = json.dumps({"version": 4, "lights": [{"type": 9, "image": "https://example.com/9.png"}]}).encode()
LEGACY = json.dumps({"version": 1, "lights": [{"type": 8, "image": "https://example.com/8.png"}]}).encode()


class SchedulerTestCase(unittest.TestCase):
    def setUp(self):
        ensure_app()
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.http = FakeHttp({DEFAULT_DATABASE_URL: GOOD})
        self.pool = QtCore.QThreadPool()
        self.db = LightDatabase(Path(self._tmp.name), http_get=self.http, clock=self.clock, thread_pool=self.pool)
        self.countdowns = []
        self.outcomes = []
        self.unsupported = []
        self.db.events.countdown.connect(lambda remaining: self.countdowns.append(remaining))
        self.db.events.updated.connect(lambda outcome: self.outcomes.append(outcome))
        self.db.events.unsupported_version.connect(lambda message: self.unsupported.append(message))

    def tearDown(self):
        self.db.stop()
        self._tmp.cleanup()

    def settle(self):
        self.assertTrue(wait_until(lambda: not self.db.scheduler.in_flight))


class TestAutomaticSync(SchedulerTestCase):
    def test_first_tick_syncs_when_never_checked(self):
        self.assertEqual(self.db.remaining_ttl(), 0.0)
        self.db.scheduler.tick()
        self.assertEqual(self.countdowns, [0.0])
        self.assertIs(self.db.scheduler.state, SchedulerState.DUE)
        self.settle()

        self.assertIs(self.db.scheduler.state, SchedulerState.IDLE)
        self.assertEqual(len(self.outcomes), 1)
        self.assertTrue(self.outcomes[0].success)
        self.assertFalse(self.outcomes[0].forced)
        self.assertIsNotNone(self.db.lookup(8))
        self.assertEqual(self.db.sync_state().last_attempt, self.clock.now)
        self.assertEqual(self.db.store.read_raw(), GOOD)

    def test_countdown_decreases_then_resets_after_sync(self):
        self.db.scheduler.tick()
        self.settle()
        self.assertEqual(self.db.remaining_ttl(), TTL)

        self.countdowns.clear()
        for _ in range(3):
            self.clock.advance(10)
            self.db.scheduler.tick()
        self.assertEqual(self.countdowns, [TTL - 10, TTL - 20, TTL - 30])
        self.assertEqual(self.http.count(DEFAULT_DATABASE_URL), 1)

        self.clock.advance(TTL)
        self.db.scheduler.tick()
        self.settle()
        self.assertEqual(self.http.count(DEFAULT_DATABASE_URL), 2)
        self.assertEqual(self.db.remaining_ttl(), TTL)

    def test_failure_waits_a_full_interval(self):
        self.http.responses[DEFAULT_DATABASE_URL] = FetchError(FetchErrorKind.UNREACHABLE, url=DEFAULT_DATABASE_URL)
        self.db.scheduler.tick()
        self.settle()
        self.assertFalse(self.outcomes[0].success)
        self.assertIs(self.outcomes[0].reason.kind, FetchErrorKind.UNREACHABLE)

        self.clock.advance(10)
        self.db.scheduler.tick()
        self.clock.advance(TTL - 20)
        self.db.scheduler.tick()
        self.assertFalse(self.db.scheduler.in_flight)
        self.assertEqual(self.http.count(DEFAULT_DATABASE_URL), 1)

        self.assertIs(self.db.force_sync(), ForceResult.STARTED)
        self.settle()
        self.assertEqual(self.http.count(DEFAULT_DATABASE_URL), 2)
        self.assertTrue(self.outcomes[-1].forced)

        self.clock.advance(TTL)
        self.db.scheduler.tick()
        self.settle()
        self.assertEqual(self.http.count(DEFAULT_DATABASE_URL), 3)


class TestForcedSync(SchedulerTestCase):
    def test_disabled_mode_refuses_and_keeps_timestamp(self):
        self.db.set_fetch_mode(FetchMode.DISABLED)
        with self.assertRaises(ConfigError) as ctx:
            self.db.force_sync()
        self.assertIs(ctx.exception.kind, ConfigErrorKind.FETCH_DISABLED)
        self.assertIsNone(self.db.sync_state().last_attempt)

        self.db.scheduler.tick()
        self.assertIs(self.db.scheduler.state, SchedulerState.DISABLED)
        self.assertEqual(self.countdowns, [])
        self.assertEqual(self.http.calls, [])
        self.assertEqual(self.outcomes, [])

    def test_concurrent_force_is_coalesced(self):
        self.http.gate = threading.Event()
        self.assertIs(self.db.force_sync(), ForceResult.STARTED)
        self.assertIs(self.db.force_sync(), ForceResult.COALESCED)
        self.db.scheduler.tick()
        self.http.gate.set()
        self.settle()
        self.assertEqual(self.http.count(DEFAULT_DATABASE_URL), 1)
        self.assertEqual(len(self.outcomes), 1)
        self.assertTrue(self.outcomes[0].success)

    def test_unsupported_remote_version_keeps_current_database(self):
        self.db.force_sync()
        self.settle()
        catalog = self.db.catalog()

        self.http.responses[DEFAULT_DATABASE_URL] = NEWER
        self.db.force_sync()
        self.settle()
        self.assertFalse(self.outcomes[-1].success)
        self.assertTrue(self.outcomes[-1].reason.is_unsupported_version)
        self.assertEqual(len(self.unsupported), 1)
        self.assertIn("update to the latest version", self.unsupported[0])
        self.assertIs(self.db.catalog(), catalog)
        self.assertEqual(self.db.store.read_raw(), GOOD)

    def test_invalid_custom_url(self):
        self.db.set_fetch_mode(FetchMode.CUSTOM_REMOTE)
        self.db.set_custom_url("not a url")
        with self.assertRaises(ConfigError) as ctx:
            self.db.force_sync()
        self.assertIs(ctx.exception.kind, ConfigErrorKind.INVALID_URL)

        self.db.scheduler.tick()
        self.assertFalse(self.db.scheduler.in_flight)
        self.assertEqual(self.outcomes, [])
        self.assertEqual(self.db.sync_state().last_attempt, self.clock.now)

    def test_custom_url_is_used(self):
        url = "https://mirror.example.com/lights.json"
        self.http.responses[url] = GOOD
        self.db.set_fetch_mode("customURL")
        self.db.set_custom_url(url)
        self.db.force_sync()
        self.settle()
        self.assertEqual(self.http.calls, [url])

    def test_unexpected_worker_error_is_reported(self):
        self.http.responses[DEFAULT_DATABASE_URL] = RuntimeError("transport exploded")
        self.assertIs(self.db.force_sync(), ForceResult.STARTED)
        self.settle()
        self.assertEqual(len(self.outcomes), 1)
        self.assertFalse(self.outcomes[0].success)
        self.assertIsInstance(self.outcomes[0].reason, RuntimeError)
        self.assertIs(self.db.scheduler.state, SchedulerState.IDLE)

        self.http.responses[DEFAULT_DATABASE_URL] = GOOD
        self.assertIs(self.db.force_sync(), ForceResult.STARTED)
        self.settle()
        self.assertTrue(self.outcomes[-1].success)

    def test_cancel_in_flight(self):
        self.http.gate = threading.Event()
        self.db.force_sync()
        self.assertTrue(self.db.scheduler.cancel())
        self.http.gate.set()
        self.settle()
        self.assertIsInstance(self.outcomes[0].reason, SyncCancelled)
        self.assertFalse(self.db.store.has_database())
        self.assertIsNone(self.db.catalog())


class TestStartup(SchedulerTestCase):
    def test_fresh_database_is_not_refetched(self):
        self.db.store.save(GOOD)
        self.db.settings.record_attempt(self.clock.now)
        self.db.start()
        self.assertFalse(self.db.scheduler.in_flight)
        self.assertIsNotNone(self.db.lookup("8"))
        self.assertEqual(self.http.calls, [])

    def test_missing_or_legacy_database_is_refetched(self):
        for raw in (None, LEGACY):
            with self.subTest(raw=raw):
                if raw is not None:
                    self.db.store.save(raw)
                self.db.settings.record_attempt(self.clock.now)
                self.db.load_from_disk(reload=True)
                self.db.start()
                self.assertTrue(self.db.scheduler.in_flight)
                self.settle()
                self.assertEqual(self.db.catalog().version, 3)
                self.db.scheduler.stop()

    def test_unsupported_database_on_disk(self):
        self.db.store.save(NEWER)
        self.assertIsNone(self.db.load_from_disk())
        self.assertEqual(len(self.unsupported), 1)
        self.assertFalse(self.db.store.has_database())


class TestThreadPool(unittest.TestCase):
    def test_default_pool_is_private(self):
        ensure_app()
        with tempfile.TemporaryDirectory() as tmp:
            db = LightDatabase(Path(tmp), http_get=FakeHttp(), clock=FakeClock())
            pool = db.scheduler._thread_pool
            self.assertIsNot(pool, QtCore.QThreadPool.globalInstance())
            self.assertIs(pool.parent(), db.scheduler)
            db.stop()


if __name__ == "__main__":
    unittest.main()
