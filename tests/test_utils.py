"""Tests for internal utilities."""

import json
import tempfile
import unittest
from pathlib import Path

import httpx
import requests

from istatkit._errors import ConnectivityError, RequestTimeoutError
from istatkit._retry import MaxRetriesExceededError
from istatkit._utils import (
    fnv1a_32,
    is_timeout_exception,
    load_json_file,
    save_bytes_file,
    save_json_file,
)


class TestFnv1a32(unittest.TestCase):
    """Tests for fnv1a_32()."""

    def test_reference_values(self):
        self.assertEqual(fnv1a_32(""), 2166136261)
        self.assertEqual(fnv1a_32("a"), 3826002220)

    def test_is_deterministic(self):
        self.assertEqual(fnv1a_32("CL_ITTER107"), fnv1a_32("CL_ITTER107"))

    def test_fits_in_32_bits(self):
        for key in ("CL_FREQ", "CL_ITTER107", "città", "x" * 500):
            with self.subTest(key=key):
                self.assertTrue(0 <= fnv1a_32(key) < 2**32)

    def test_distinguishes_keys(self):
        self.assertNotEqual(fnv1a_32("CL_FREQ"), fnv1a_32("CL_SEXISTAT1"))


class TestJsonFiles(unittest.TestCase):
    """Tests for save_json_file() and load_json_file()."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_save_creates_parents_and_round_trips(self):
        path = self.tmp / "meta" / "dataflows.json"

        save_json_file({"id": "150_908", "name": "Popolazione residente"}, path)

        self.assertEqual(load_json_file(path), {"id": "150_908", "name": "Popolazione residente"})

    def test_save_leaves_no_temp_files(self):
        path = self.tmp / "codelists.json"

        save_json_file({"a": 1}, path)
        save_json_file({"a": 2}, path)

        self.assertEqual([p.name for p in self.tmp.iterdir()], ["codelists.json"])
        self.assertEqual(load_json_file(path), {"a": 2})

    def test_non_serializable_values_become_strings(self):
        path = self.tmp / "log.json"

        save_json_file({"path": Path("a/b")}, path)

        self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {"path": "a/b"})

    def test_save_failure_raises_runtime_error(self):
        blocker = self.tmp / "blocker"
        blocker.write_text("not a directory")

        with self.assertRaises(RuntimeError):
            save_json_file({"a": 1}, blocker / "file.json")

    def test_load_missing_returns_default(self):
        self.assertIsNone(load_json_file(self.tmp / "missing.json"))
        self.assertEqual(load_json_file(self.tmp / "missing.json", default={}), {})

    def test_load_corrupted_returns_default(self):
        path = self.tmp / "broken.json"
        path.write_text("{not json", encoding="utf-8")

        with self.assertLogs("istatkit._utils", level="WARNING"):
            self.assertEqual(load_json_file(path, default={}), {})


class TestSaveBytesFile(unittest.TestCase):
    """Tests for save_bytes_file()."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_writes_content(self):
        path = self.tmp / "d7b" / "D7B2023.csv.zip"

        save_bytes_file(b"PK\x03\x04", path)

        self.assertEqual(path.read_bytes(), b"PK\x03\x04")

    def test_overwrites_existing_file(self):
        path = self.tmp / "file.bin"
        path.write_bytes(b"old")

        save_bytes_file(b"new", path)

        self.assertEqual(path.read_bytes(), b"new")
        self.assertEqual(len(list(self.tmp.iterdir())), 1)

    def test_failure_raises_runtime_error(self):
        blocker = self.tmp / "blocker"
        blocker.write_text("x")

        with self.assertRaises(RuntimeError):
            save_bytes_file(b"x", blocker / "file.bin")


class TestIsTimeoutException(unittest.TestCase):
    """Tests for is_timeout_exception()."""

    # ---- True cases ----

    def test_request_timeout_error(self):
        self.assertTrue(is_timeout_exception(RequestTimeoutError("timed out")))

    def test_requests_timeout(self):
        self.assertTrue(is_timeout_exception(requests.Timeout("timed out")))

    def test_httpx_timeout(self):
        self.assertTrue(is_timeout_exception(httpx.ReadTimeout("timed out")))

    def test_python_builtin_timeout_error(self):
        self.assertTrue(is_timeout_exception(TimeoutError("timeout")))

    def test_max_retries_exceeded_wrapping_timeout(self):
        exc = MaxRetriesExceededError("Max retries exceeded", last_exception=RequestTimeoutError("timed out"))
        self.assertTrue(is_timeout_exception(exc))

    # ---- False cases ----

    def test_generic_exception(self):
        self.assertFalse(is_timeout_exception(Exception("boom")))

    def test_connectivity_error_is_not_timeout(self):
        self.assertFalse(is_timeout_exception(ConnectivityError("refused")))

    def test_requests_connection_error_is_not_timeout(self):
        self.assertFalse(is_timeout_exception(requests.ConnectionError("refused")))

    def test_max_retries_exceeded_wrapping_non_timeout(self):
        exc = MaxRetriesExceededError("Max retries exceeded", last_exception=ConnectivityError("refused"))
        self.assertFalse(is_timeout_exception(exc))

    def test_max_retries_exceeded_without_cause(self):
        self.assertFalse(is_timeout_exception(MaxRetriesExceededError("Max retries exceeded")))


if __name__ == "__main__":
    unittest.main()
