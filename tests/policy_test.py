"""
Expiration policy against the in-memory store, driven by a manual clock.

Times are expressed as offsets from T0, a minute-aligned instant, so
"00:01:30" in the comments means T0 + 90 seconds.
"""

import time
import unittest
from unittest.mock import MagicMock

from sessionlite.backing_store import BackingStore, StoreUnavailableError
from sessionlite.keys import KeyNaming, round_up_to_next_minute
from sessionlite.memory_store import InMemoryBackingStore, ManualClock
from sessionlite.metrics import MetricsCollector
from sessionlite.policy import ExpirationPolicy
from sessionlite.record import Record


T0 = 1_700_000_040.0
T0_MS = 1_700_000_040_000
MARGIN = 300


class PolicyTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock(T0)
        self.store = InMemoryBackingStore(clock=self.clock)
        self.keys = KeyNaming("test:session")
        self.metrics = MetricsCollector()
        self.policy = ExpirationPolicy(
            self.store,
            keys=self.keys,
            safety_margin_secs=MARGIN,
            clock=self.clock,
            metrics=self.metrics,
        )

    def create(self, record_id: str, interval: int) -> Record:
        record = Record(id=record_id, creation_time=self.clock(), max_inactive_interval=interval)
        self.store.set_with_ttl(self.keys.live_key(record_id), "payload")
        self.policy.on_create_or_refresh(record)
        record.original_expiry_ms = record.expiry_millis()
        return record

    def refresh(self, record: Record) -> None:
        record.touch(self.clock())
        self.policy.on_create_or_refresh(record, record.original_expiry_ms)
        record.original_expiry_ms = record.expiry_millis()

    def bucket(self, offset_secs: int) -> str:
        return self.keys.bucket_key(T0_MS + offset_secs * 1000)

    def buckets_containing(self, record_id: str) -> list:
        pending = self.keys.pending_expiry_key(record_id)
        prefix = f"{self.keys.namespace}:expirations:"
        return sorted(
            key for key in self.store.keys()
            if key.startswith(prefix) and pending in self.store.set_members(key)
        )


class CreateOrRefreshTests(PolicyTestCase):

    def test_new_record_filed_in_rounded_up_bucket(self):
        self.create("r1", 90)

        pending = self.keys.pending_expiry_key("r1")
        self.assertEqual(self.store.set_members(self.bucket(120)), {pending})
        self.assertEqual(self.store.ttl(self.bucket(120)), 90 + MARGIN)
        self.assertEqual(self.store.ttl(pending), 90)
        self.assertEqual(self.store.ttl(self.keys.live_key("r1")), 90 + MARGIN)

    def test_refresh_moves_record_between_buckets(self):
        record = self.create("r1", 90)
        self.clock.advance(40)
        self.refresh(record)

        self.assertEqual(self.store.set_members(self.bucket(120)), set())
        self.assertEqual(
            self.store.set_members(self.bucket(180)),
            {self.keys.pending_expiry_key("r1")},
        )

    def test_refresh_within_same_minute_keeps_bucket(self):
        record = self.create("r1", 90)
        self.clock.advance(5)
        self.refresh(record)

        self.assertEqual(self.buckets_containing("r1"), [self.bucket(120)])
        self.assertEqual(self.store.ttl(self.keys.pending_expiry_key("r1")), 90)

    def test_single_bucket_invariant_over_many_refreshes(self):
        record = self.create("r1", 90)
        for step in (7, 23, 31, 59, 1, 60, 45, 88):
            self.clock.advance(step)
            self.refresh(record)
            expected = self.keys.bucket_key(round_up_to_next_minute(record.expiry_millis()))
            self.assertEqual(self.buckets_containing("r1"), [expected])

    def test_interval_change_refiles_record(self):
        record = self.create("r1", 90)
        record.max_inactive_interval = 600
        self.policy.on_create_or_refresh(record, record.original_expiry_ms)

        self.assertEqual(self.buckets_containing("r1"), [self.bucket(660)])

    def test_no_premature_loss_after_refresh(self):
        record = self.create("r1", 90)
        self.clock.advance(40)
        self.refresh(record)

        # Past the original expiry (00:01:30), before the new one (00:02:10)
        self.clock.advance(60)
        self.policy.sweep()
        self.policy.sweep(minute_ms=T0_MS + 120_000)

        self.assertTrue(self.store.exists(self.keys.live_key("r1")))
        self.assertTrue(self.store.exists(self.keys.pending_expiry_key("r1")))

    def test_permanent_record_never_indexed(self):
        record = self.create("forever", -1)

        self.assertEqual(self.buckets_containing("forever"), [])
        self.assertFalse(self.store.exists(self.keys.pending_expiry_key("forever")))
        self.assertEqual(self.store.ttl(self.keys.live_key("forever")), -1.0)

        self.clock.advance(10 * 24 * 3600)
        self.policy.sweep()
        self.assertTrue(self.store.exists(self.keys.live_key("forever")))
        self.assertIsNone(record.expiry_millis())

    def test_becoming_permanent_leaves_index(self):
        record = self.create("r1", 90)
        record.max_inactive_interval = -1
        self.policy.on_create_or_refresh(record, record.original_expiry_ms)

        self.assertEqual(self.buckets_containing("r1"), [])
        self.assertEqual(self.store.ttl(self.keys.live_key("r1")), -1.0)
        self.assertFalse(self.store.exists(self.keys.pending_expiry_key("r1")))

    def test_zero_interval_deletes_synchronously(self):
        record = Record(id="gone", creation_time=T0, max_inactive_interval=0)
        self.store.set_with_ttl(self.keys.live_key("gone"), "payload")

        self.policy.on_create_or_refresh(record)

        self.assertFalse(self.store.exists(self.keys.live_key("gone")))
        self.assertEqual(self.buckets_containing("gone"), [])

    def test_zero_interval_after_bounded_removes_membership(self):
        record = self.create("r1", 90)
        record.max_inactive_interval = 0
        self.policy.on_create_or_refresh(record, record.original_expiry_ms)

        self.assertEqual(self.buckets_containing("r1"), [])
        self.assertFalse(self.store.exists(self.keys.live_key("r1")))
        self.assertFalse(self.store.exists(self.keys.pending_expiry_key("r1")))

    def test_safety_margin_is_configurable(self):
        policy = ExpirationPolicy(self.store, keys=self.keys, safety_margin_secs=30, clock=self.clock)
        record = Record(id="r2", creation_time=T0, max_inactive_interval=60)
        self.store.set_with_ttl(self.keys.live_key("r2"), "payload")
        policy.on_create_or_refresh(record)

        self.assertEqual(self.store.ttl(self.keys.live_key("r2")), 90)
        with self.assertRaises(ValueError):
            ExpirationPolicy(self.store, safety_margin_secs=-1)

    def test_records_operation_metrics(self):
        self.create("r1", 90)
        self.assertEqual(self.metrics.get_operation_metrics("on_create_or_refresh")["count"], 1)


class DeleteTests(PolicyTestCase):

    def test_delete_removes_membership_and_is_idempotent(self):
        record = self.create("r1", 90)
        self.create("r2", 90)

        self.policy.on_delete(record)
        self.policy.on_delete(record)

        self.assertEqual(
            self.store.set_members(self.bucket(120)),
            {self.keys.pending_expiry_key("r2")},
        )

    def test_delete_of_permanent_record_is_noop(self):
        record = self.create("forever", -1)
        self.policy.on_delete(record)
        self.assertTrue(self.store.exists(self.keys.live_key("forever")))


class SweepTests(PolicyTestCase):

    def test_example_scenario(self):
        record = self.create("r1", 90)          # 00:00:00, expiry 00:01:30 -> bucket 00:02:00
        self.clock.advance(40)
        self.refresh(record)                    # 00:00:40, expiry 00:02:10 -> bucket 00:03:00
        self.assertEqual(self.buckets_containing("r1"), [self.bucket(180)])

        self.clock.set(T0 + 185)                # 00:03:05
        result = self.policy.sweep()

        self.assertEqual(result.bucket_ms, T0_MS + 180_000)
        self.assertEqual(result.members, [self.keys.pending_expiry_key("r1")])
        self.assertEqual(result.touched, 1)
        self.assertFalse(result.timed_out)
        self.assertFalse(self.store.exists(self.bucket(180)))
        # The touch evicted the pending-expiry marker right away
        self.assertFalse(self.store.exists(self.keys.pending_expiry_key("r1")))

        # Live key is only held by its backstop TTL now
        self.assertEqual(result.still_present, 1)
        self.clock.set(T0 + 40 + 90 + MARGIN)
        self.assertFalse(self.store.exists(self.keys.live_key("r1")))

    def test_touch_fires_expiry_notification(self):
        expired = []
        self.store.add_expiry_listener(expired.append)
        self.create("r1", 90)

        self.clock.set(T0 + 125)
        self.policy.sweep()

        self.assertIn(self.keys.pending_expiry_key("r1"), expired)

    def test_sweep_is_idempotent(self):
        self.create("r1", 30)
        self.create("r2", 45)
        self.clock.set(T0 + 65)

        first = self.policy.sweep()
        state_after_first = sorted(self.store.keys())
        second = self.policy.sweep()

        self.assertEqual(len(first.members), 2)
        self.assertEqual(second.members, [])
        self.assertEqual(sorted(self.store.keys()), state_after_first)

    def test_members_already_deleted_are_harmless(self):
        record = self.create("r1", 30)
        self.store.delete(self.keys.live_key("r1"))
        self.store.delete(self.keys.pending_expiry_key("r1"))
        self.clock.set(T0 + 65)

        result = self.policy.sweep(minute_ms=round_up_to_next_minute(record.expiry_millis()))

        self.assertEqual(result.touched, 1)
        self.assertEqual(result.still_present, 0)

    def test_foreign_member_is_touched_without_live_key(self):
        self.store.set_add(self.bucket(60), "unrelated")
        self.clock.set(T0 + 61)
        result = self.policy.sweep()
        self.assertEqual(result.touched, 1)
        self.assertEqual(result.still_present, 0)

    def test_eventual_eviction_without_sweeps(self):
        self.create("r1", 60)

        self.clock.set(T0 + 60 + MARGIN - 1)
        self.assertTrue(self.store.exists(self.keys.live_key("r1")))
        self.clock.set(T0 + 60 + MARGIN)
        self.assertFalse(self.store.exists(self.keys.live_key("r1")))
        self.assertEqual(self.store.set_members(self.bucket(120)), set())

    def test_explicit_minute_is_truncated(self):
        self.create("r1", 30)
        result = self.policy.sweep(minute_ms=T0_MS + 60_000 + 12_345)
        self.assertEqual(result.bucket_ms, T0_MS + 60_000)
        self.assertEqual(len(result.members), 1)

    def test_deadline_leaves_remainder_untouched(self):
        expired = []
        self.store.add_expiry_listener(expired.append)
        self.create("r1", 30)
        self.create("r2", 30)
        self.clock.set(T0 + 65)

        result = self.policy.sweep(deadline=time.monotonic() - 1)

        self.assertTrue(result.timed_out)
        self.assertEqual(result.touched, 0)
        self.assertEqual(len(result.members), 2)
        self.assertEqual(expired, [])
        # The bucket is gone either way; members rely on their own TTLs
        self.assertFalse(self.store.exists(self.bucket(60)))


class StoreFailureTests(unittest.TestCase):

    def setUp(self):
        self.store = MagicMock(spec=BackingStore)
        self.metrics = MetricsCollector()
        self.policy = ExpirationPolicy(self.store, clock=lambda: T0, metrics=self.metrics)

    def test_mutation_errors_propagate(self):
        self.store.set_add.side_effect = StoreUnavailableError("connection refused")
        record = Record(id="r1", creation_time=T0, max_inactive_interval=90)

        with self.assertRaises(StoreUnavailableError):
            self.policy.on_create_or_refresh(record)
        self.assertEqual(self.metrics.get_operation_metrics("on_create_or_refresh")["error_count"], 1)

    def test_delete_errors_propagate(self):
        self.store.set_remove.side_effect = StoreUnavailableError("timeout")
        with self.assertRaises(StoreUnavailableError):
            self.policy.on_delete(Record(id="r1", creation_time=T0, max_inactive_interval=90))

    def test_sweep_errors_propagate(self):
        self.store.set_members.side_effect = StoreUnavailableError("timeout")
        with self.assertRaises(StoreUnavailableError):
            self.policy.sweep()

    def test_refresh_issues_expected_store_calls(self):
        policy = ExpirationPolicy(self.store, clock=lambda: T0 + 40)
        record = Record(id="r1", creation_time=T0 + 40, max_inactive_interval=90)
        keys = policy.keys

        policy.on_create_or_refresh(record, original_expiry_ms=T0_MS + 90_000)

        self.store.set_remove.assert_called_once_with(
            keys.bucket_key(T0_MS + 120_000), keys.pending_expiry_key("r1")
        )
        self.store.set_add.assert_called_once_with(
            keys.bucket_key(T0_MS + 180_000), keys.pending_expiry_key("r1")
        )
        self.store.set_expire.assert_called_once_with(keys.bucket_key(T0_MS + 180_000), 90 + 300)
        self.store.set_with_ttl.assert_called_once_with(keys.pending_expiry_key("r1"), "", 90)
        self.store.expire.assert_called_once_with(keys.live_key("r1"), 90 + 300)


if __name__ == "__main__":
    unittest.main()
