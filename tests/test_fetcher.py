"""Tests for remote URL selection and sync attempts"""

import json
import socketserver
import tempfile
import threading
import unittest
from pathlib import Path

from qt_support import FakeHttp

from lightdb.errors import ConfigError, ConfigErrorKind, FetchError, FetchErrorKind, SchemaError
from lightdb.fetcher import CatalogFetcher, SyncStatus, fetch_url, resolve_remote_url
from lightdb.settings import DEFAULT_DATABASE_URL, FetchMode, SyncState
from lightdb.store import LocalStore

URL = "https://lights.example.com/lights.json"
GOOD = json.dumps({"version": 3, "lights": [{"type": 8, "image": "https://example.com/8.png"}]}).encode()
NEWER = json.dumps({"version": 4, "lights": [{"type": 9, "image": "https://example.com/9.png"}]}).encode()


class TestResolveRemoteUrl(unittest.TestCase):
    def test_modes(self):
        self.assertIsNone(resolve_remote_url(SyncState(fetch_mode=FetchMode.DISABLED)))
        self.assertEqual(resolve_remote_url(SyncState(fetch_mode=FetchMode.DEFAULT_REMOTE, custom_url=URL)), DEFAULT_DATABASE_URL)
        custom = SyncState(fetch_mode=FetchMode.CUSTOM_REMOTE, custom_url=f"  {URL}\n")
        self.assertEqual(resolve_remote_url(custom), URL)

    def test_invalid_custom_url(self):
        for url in ("", "lights.json", "ftp://example.com/db.json", "https://"):
            with self.subTest(url=url):
                with self.assertRaises(ConfigError) as ctx:
                    resolve_remote_url(SyncState(fetch_mode=FetchMode.CUSTOM_REMOTE, custom_url=url))
                self.assertIs(ctx.exception.kind, ConfigErrorKind.INVALID_URL)

    def test_file_url_allowed(self):
        state = SyncState(fetch_mode=FetchMode.CUSTOM_REMOTE, custom_url="file:///tmp/lights.json")
        self.assertEqual(resolve_remote_url(state), "file:///tmp/lights.json")


class TestFetchUrl(unittest.TestCase):
    def test_reads_file_url(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "lights.json"
            path.write_bytes(GOOD)
            self.assertEqual(fetch_url(path.as_uri(), 5), GOOD)

    def test_missing_file_is_unreachable(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(FetchError) as ctx:
                fetch_url((Path(tmp) / "absent.json").as_uri(), 5)
        self.assertIs(ctx.exception.kind, FetchErrorKind.UNREACHABLE)


class _RawReplyHandler(socketserver.StreamRequestHandler):
    def handle(self):
        while self.rfile.readline() not in (b"\r\n", b"\n", b""):
            pass
        self.wfile.write(self.server.reply)


class TestFetchUrlProtocolErrors(unittest.TestCase):
    """Servers that break HTTP framing are reported as unreachable"""

    def serve(self, reply):
        server = socketserver.TCPServer(("127.0.0.1", 0), _RawReplyHandler)
        server.reply = reply
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        self.addCleanup(server.server_close)
        self.addCleanup(server.shutdown)
        host, port = server.server_address
        return f"http://{host}:{port}/lights.json"

    def test_bad_status_line(self):
        url = self.serve(b"garbage\r\n\r\n")
        with self.assertRaises(FetchError) as ctx:
            fetch_url(url, 5)
        self.assertIs(ctx.exception.kind, FetchErrorKind.UNREACHABLE)

    def test_truncated_body(self):
        url = self.serve(b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\nConnection: close\r\n\r\n0123456789")
        with self.assertRaises(FetchError) as ctx:
            fetch_url(url, 5)
        self.assertIs(ctx.exception.kind, FetchErrorKind.UNREACHABLE)


class TestCatalogFetcher(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LocalStore(Path(self._tmp.name))

    def tearDown(self):
        self._tmp.cleanup()

    def test_success_persists_document(self):
        fetcher = CatalogFetcher(self.store, FakeHttp({URL: GOOD}))
        result = fetcher.run(URL)
        self.assertIs(result.status, SyncStatus.UPDATED)
        self.assertTrue(result.ok)
        self.assertEqual(result.catalog.model_ids, ["8"])
        self.assertEqual(self.store.read_raw(), GOOD)

    def test_disabled_is_skipped(self):
        http = FakeHttp()
        result = CatalogFetcher(self.store, http).run(None)
        self.assertIs(result.status, SyncStatus.SKIPPED)
        self.assertEqual(http.calls, [])

    def test_bad_payload_keeps_previous_database(self):
        self.store.save(GOOD)
        for payload in (NEWER, b"<html>oops</html>"):
            with self.subTest(payload=payload):
                result = CatalogFetcher(self.store, FakeHttp({URL: payload})).run(URL)
                self.assertIs(result.status, SyncStatus.FAILED)
                self.assertIsInstance(result.error, SchemaError)
                self.assertEqual(self.store.read_raw(), GOOD)

    def test_network_failure(self):
        http = FakeHttp({URL: FetchError(FetchErrorKind.UNREACHABLE, url=URL)})
        result = CatalogFetcher(self.store, http).run(URL)
        self.assertIs(result.status, SyncStatus.FAILED)
        self.assertIs(result.error.kind, FetchErrorKind.UNREACHABLE)
        self.assertIsNone(self.store.read_raw())

    def test_bad_status(self):
        result = CatalogFetcher(self.store, FakeHttp()).run(URL)
        self.assertIs(result.error.kind, FetchErrorKind.BAD_STATUS)
        self.assertEqual(result.error.status, 404)

    def test_cancelled_attempt_writes_nothing(self):
        result = CatalogFetcher(self.store, FakeHttp({URL: GOOD})).run(URL, cancelled=lambda: True)
        self.assertIs(result.status, SyncStatus.CANCELLED)
        self.assertFalse(self.store.has_database())


if __name__ == "__main__":
    unittest.main()
