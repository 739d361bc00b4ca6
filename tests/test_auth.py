import sys
import unittest
from pathlib import Path

from flask import Flask

sys.path.insert(0, str(Path(__file__).parent.parent))

from remote_workspace.auth import (  # noqa: E402
    AuthFailureStore,
    client_ip,
    is_same_origin_mutation,
    passwords_match,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class AuthFailureStoreTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = AuthFailureStore(
            window_seconds=600,
            max_attempts=3,
            block_seconds=900,
            max_entries=2,
            clock=self.clock,
        )

    def test_block_starts_at_threshold(self):
        self.assertIsNone(self.store.record_failure("10.0.0.1"))
        self.assertIsNone(self.store.record_failure("10.0.0.1"))
        self.assertEqual(self.store.record_failure("10.0.0.1"), 900)
        self.assertEqual(self.store.retry_after("10.0.0.1"), 900)

    def test_retry_after_counts_down_and_expires(self):
        for _ in range(3):
            self.store.record_failure("10.0.0.1")
        self.clock.advance(899.2)
        self.assertEqual(self.store.retry_after("10.0.0.1"), 1)
        self.clock.advance(1)
        self.assertIsNone(self.store.retry_after("10.0.0.1"))

    def test_window_expiry_resets_count(self):
        self.store.record_failure("10.0.0.1")
        self.store.record_failure("10.0.0.1")
        self.clock.advance(600)
        self.assertIsNone(self.store.record_failure("10.0.0.1"))
        self.assertEqual(self.store.get("10.0.0.1").failures, 1)

    def test_clear_forgets_ip(self):
        self.store.record_failure("10.0.0.1")
        self.store.clear("10.0.0.1")
        self.assertIsNone(self.store.get("10.0.0.1"))

    def test_prune_drops_only_lapsed_records(self):
        for _ in range(3):
            self.store.record_failure("blocked")
        self.store.record_failure("recent")
        self.clock.advance(700)
        self.assertEqual(self.store.prune(), 1)
        self.assertIsNone(self.store.get("recent"))
        self.assertIsNotNone(self.store.get("blocked"))
        self.clock.advance(300)
        self.assertEqual(self.store.prune(), 1)
        self.assertEqual(len(self.store), 0)

    def test_oldest_record_evicted_when_full(self):
        self.store.record_failure("a")
        self.store.record_failure("b")
        self.store.record_failure("c")
        self.assertEqual(len(self.store), 2)
        self.assertIsNone(self.store.get("a"))
        self.assertIsNotNone(self.store.get("c"))


class CredentialHelpersTests(unittest.TestCase):
    def setUp(self):
        self.app = Flask(__name__)

    def test_passwords_match(self):
        self.assertTrue(passwords_match("s3cret", "s3cret"))
        self.assertFalse(passwords_match("s3cret!", "s3cret"))
        self.assertFalse(passwords_match("S3cret", "s3cret"))
        self.assertTrue(passwords_match("päss", "päss"))

    def test_client_ip_prefers_forwarded_for(self):
        with self.app.test_request_context(
            "/", headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}
        ) as ctx:
            self.assertEqual(client_ip(ctx.request), "203.0.113.5")
        with self.app.test_request_context(
            "/", environ_base={"REMOTE_ADDR": "192.0.2.7"}
        ) as ctx:
            self.assertEqual(client_ip(ctx.request), "192.0.2.7")

    def test_origin_check(self):
        cases = [
            ({"Origin": "http://localhost"}, True),
            ({"Origin": "http://localhost:80"}, True),
            ({"Origin": "http://evil.example"}, False),
            ({"Origin": "https://localhost"}, False),
            ({"Referer": "http://localhost/ui/index.html"}, True),
            ({"Referer": "http://localhost:8080/ui"}, False),
            ({}, False),
        ]
        for headers, expected in cases:
            with self.subTest(headers=headers):
                with self.app.test_request_context(
                    "/api/clipboard/file", method="DELETE", headers=headers
                ) as ctx:
                    self.assertIs(is_same_origin_mutation(ctx.request), expected)

    def test_origin_check_honours_forwarded_host(self):
        headers = {
            "X-Forwarded-Host": "workspace.example.com",
            "X-Forwarded-Proto": "https",
            "Origin": "https://workspace.example.com",
        }
        with self.app.test_request_context("/", method="POST", headers=headers) as ctx:
            self.assertTrue(is_same_origin_mutation(ctx.request))


if __name__ == "__main__":
    unittest.main()
