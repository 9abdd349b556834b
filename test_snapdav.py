"""Tests for the snapdav command line."""

import os
import unittest
from unittest import mock

from backend_kopia import KopiaBackend
from fake_kopia import FakeKopiaServer
from snapdav import build_parser, load_backend, options_from_args


class TestArguments(unittest.TestCase):
    def test_defaults_from_environment(self):
        env = {
            "KOPIA_URL": "https://127.0.0.1:51515",
            "KOPIA_USER": "alice",
            "KOPIA_SERVER_USERNAME": "kopia",
            "KOPIA_SERVER_PASSWORD": "pw",
        }
        with mock.patch.dict(os.environ, env):
            args = build_parser().parse_args([])
        options = options_from_args(args)
        self.assertEqual(options.url, "https://127.0.0.1:51515")
        self.assertEqual(options.user, "alice")
        self.assertEqual(options.auth, ("kopia", "pw"))
        self.assertEqual(options.snapshot, "latest")
        self.assertEqual(options.path, "/")
        self.assertTrue(options.verify_tls)

    def test_flags(self):
        args = build_parser().parse_args([
            "--url", "http://kopia:51515", "--user", "bob", "--host-name", "desk",
            "--path", "/data", "--snapshot", "pin", "--insecure", "-p", "9000",
        ])
        options = options_from_args(args)
        self.assertEqual(options.host, "desk")
        self.assertEqual(options.path, "/data")
        self.assertEqual(options.snapshot, "pin")
        self.assertFalse(options.verify_tls)
        self.assertEqual(args.port, 9000)

    def test_missing_url(self):
        with mock.patch.dict(os.environ, {"KOPIA_URL": "", "KOPIA_USER": "alice"}):
            args = build_parser().parse_args([])
        with self.assertRaises(ValueError):
            options_from_args(args)


class TestLoadBackend(unittest.TestCase):
    def setUp(self):
        self.fake = FakeKopiaServer({"docs": {"a.txt": "a"}}).start()
        self.addCleanup(self.fake.stop)
        args = build_parser().parse_args(["--url", self.fake.url, "--user", "alice"])
        self.options = options_from_args(args)

    def test_file_root_serves_parent(self):
        backend = load_backend(self.options, "docs/a.txt", timeout=10)
        self.addCleanup(backend.client.close)
        self.assertIsInstance(backend, KopiaBackend)
        self.assertEqual(backend.root, "docs")
        self.assertEqual(backend.list(""), ["a.txt"])


if __name__ == "__main__":
    unittest.main()
