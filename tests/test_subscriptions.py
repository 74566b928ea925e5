import sqlite3
import tempfile
import threading
import unittest
from pathlib import Path

from subscriptions import (
    SubscriberStoreError,
    count_subscribers,
    get_subscriber,
    load_eligible_subscribers,
    load_subscribers,
    set_preferred_city,
    subscribe_user,
    unsubscribe_user,
)


class SubscriptionTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.db_path = Path(self.tmpdir.name) / "subs.sqlite3"

    def test_subscribe_creates_record(self):
        changed, entry = subscribe_user(12345, path=self.db_path)
        self.assertTrue(changed)
        self.assertEqual(entry["telegram_id"], "12345")
        self.assertTrue(entry["is_subscribed"])
        self.assertIsNone(entry["preferred_city"])
        self.assertIsNotNone(entry["subscribed_at"])
        self.assertIsInstance(entry["id"], int)

        fetched = get_subscriber(12345, path=self.db_path)
        self.assertEqual(fetched, entry)

    def test_subscribe_twice_is_noop(self):
        subscribe_user("7", path=self.db_path)
        changed, entry = subscribe_user("7", path=self.db_path)
        self.assertFalse(changed)
        self.assertTrue(entry["is_subscribed"])
        self.assertEqual(count_subscribers(path=self.db_path), 1)

    def test_resubscribe_keeps_city(self):
        subscribe_user("8", path=self.db_path)
        set_preferred_city("8", "Paris", path=self.db_path)
        unsubscribe_user("8", path=self.db_path)

        changed, entry = subscribe_user("8", path=self.db_path)
        self.assertTrue(changed)
        self.assertTrue(entry["is_subscribed"])
        self.assertEqual(entry["preferred_city"], "Paris")

    def test_unsubscribe_updates_existing(self):
        subscribe_user(54321, path=self.db_path)
        changed, entry = unsubscribe_user(54321, path=self.db_path)
        self.assertTrue(changed)
        self.assertFalse(entry["is_subscribed"])

        changed_again, entry_again = unsubscribe_user(54321, path=self.db_path)
        self.assertFalse(changed_again)
        self.assertFalse(entry_again["is_subscribed"])

    def test_unsubscribe_unknown_creates_nothing(self):
        changed, entry = unsubscribe_user("404", path=self.db_path)
        self.assertFalse(changed)
        self.assertIsNone(entry)
        self.assertIsNone(get_subscriber("404", path=self.db_path))
        self.assertEqual(count_subscribers(path=self.db_path), 0)

    def test_set_city_for_unknown_user_creates_nothing(self):
        changed, entry = set_preferred_city("999", "Oslo", path=self.db_path)
        self.assertFalse(changed)
        self.assertIsNone(entry)
        self.assertEqual(load_subscribers(self.db_path), [])

    def test_set_city_overwrites_and_strips(self):
        subscribe_user("1", path=self.db_path)
        set_preferred_city("1", "London", path=self.db_path)
        changed, entry = set_preferred_city("1", "  New York  ", path=self.db_path)
        self.assertTrue(changed)
        self.assertEqual(entry["preferred_city"], "New York")

    def test_set_city_rejects_blank(self):
        subscribe_user("1", path=self.db_path)
        with self.assertRaises(ValueError):
            set_preferred_city("1", "   ", path=self.db_path)

    def test_blank_telegram_id_rejected(self):
        with self.assertRaises(ValueError):
            subscribe_user("  ", path=self.db_path)

    def test_eligible_requires_subscription_and_city(self):
        subscribe_user("a", path=self.db_path)
        set_preferred_city("a", "Paris", path=self.db_path)
        subscribe_user("b", path=self.db_path)
        subscribe_user("c", path=self.db_path)
        set_preferred_city("c", "Rome", path=self.db_path)
        unsubscribe_user("c", path=self.db_path)

        eligible = load_eligible_subscribers(self.db_path)
        self.assertEqual([entry["telegram_id"] for entry in eligible], ["a"])
        self.assertEqual(count_subscribers(path=self.db_path, only_active=True), 2)
        self.assertEqual(count_subscribers(path=self.db_path), 3)

    def test_db_constraints_exist(self):
        subscribe_user(1, path=self.db_path)
        with sqlite3.connect(self.db_path) as conn:
            indexes = {
                row[1]: row
                for row in conn.execute("PRAGMA index_list('subscribers')").fetchall()
            }
            self.assertIn("idx_subscribers_telegram_id", indexes)
            self.assertTrue(indexes["idx_subscribers_telegram_id"][2])

            info = conn.execute("PRAGMA table_info('subscribers')").fetchall()
            pk_columns = [row[1] for row in info if row[5]]
            self.assertIn("id", pk_columns)

    def test_concurrent_subscribes_create_one_record(self):
        subscribe_user("warmup", path=self.db_path)
        barrier = threading.Barrier(8)
        results = []
        errors = []

        def _worker():
            barrier.wait()
            try:
                results.append(subscribe_user("42", path=self.db_path))
            except SubscriberStoreError as exc:  # locked database under contention
                errors.append(exc)

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT COUNT(*) FROM subscribers WHERE telegram_id = '42'"
            ).fetchone()[0]
        self.assertEqual(rows, 1)
        self.assertLessEqual(sum(1 for changed, _ in results if changed), 1)

    def test_unwritable_path_raises_store_error(self):
        blocker = Path(self.tmpdir.name) / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        with self.assertRaises(SubscriberStoreError):
            subscribe_user("1", path=blocker / "subs.sqlite3")


if __name__ == "__main__":
    unittest.main()
