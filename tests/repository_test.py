"""
Session repository: persistence on top of the policy and lifecycle events,
including the full expiry path (sweep touch -> store notification -> event).
"""

import unittest
from unittest.mock import MagicMock

from sessionlite.keys import KeyNaming
from sessionlite.memory_store import InMemoryBackingStore, ManualClock
from sessionlite.metrics import StructuredLogger
from sessionlite.policy import ExpirationPolicy
from sessionlite.repository import (
    SESSION_CREATED,
    SESSION_DELETED,
    SESSION_EXPIRED,
    SessionRepository,
)


T0 = 1_700_000_040.0
T0_MS = 1_700_000_040_000


class RepositoryTests(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock(T0)
        self.store = InMemoryBackingStore(clock=self.clock)
        self.keys = KeyNaming("test:session")
        self.policy = ExpirationPolicy(self.store, keys=self.keys, clock=self.clock)
        self.structured = MagicMock(spec=StructuredLogger)
        self.repository = SessionRepository(
            self.store,
            self.policy,
            default_max_inactive_interval=90,
            clock=self.clock,
            structured_logger=self.structured,
        )
        self.events = []
        self.repository.add_listener(self.events.append)
        self.repository.subscribe_to_store()

    def kinds(self):
        return [(event.kind, event.record_id) for event in self.events]

    def test_create_save_and_find(self):
        record = self.repository.create_session()
        record.set_attribute("user", "alice")
        self.repository.save(record)

        found = self.repository.find_by_id(record.id)

        self.assertEqual(found, record)
        self.assertEqual(found.original_expiry_ms, T0_MS + 90_000)
        self.assertEqual(self.kinds(), [(SESSION_CREATED, record.id)])
        self.structured.log_session_event.assert_called_with(SESSION_CREATED, record.id)

    def test_second_save_is_not_a_creation(self):
        record = self.repository.create_session()
        self.repository.save(record)
        self.repository.save(record)
        self.assertEqual(self.kinds(), [(SESSION_CREATED, record.id)])

    def test_touch_slides_expiry_and_moves_bucket(self):
        record = self.repository.create_session()
        self.repository.save(record)

        self.clock.advance(40)
        touched = self.repository.touch(record.id)

        self.assertEqual(touched.last_accessed_time, T0 + 40)
        pending = self.keys.pending_expiry_key(record.id)
        self.assertEqual(self.store.set_members(self.keys.bucket_key(T0_MS + 120_000)), set())
        self.assertEqual(self.store.set_members(self.keys.bucket_key(T0_MS + 180_000)), {pending})

        # Past the original expiry, still readable
        self.clock.advance(60)
        self.assertIsNotNone(self.repository.find_by_id(record.id))

    def test_touch_of_unknown_record(self):
        self.assertIsNone(self.repository.touch("missing"))

    def test_find_expired_record_reports_expiry_once(self):
        record = self.repository.create_session()
        self.repository.save(record)

        self.clock.advance(95)
        self.assertIsNone(self.repository.find_by_id(record.id))
        self.assertIsNone(self.repository.find_by_id(record.id))

        self.assertFalse(self.store.exists(self.keys.live_key(record.id)))
        self.assertEqual(
            self.kinds(),
            [(SESSION_CREATED, record.id), (SESSION_EXPIRED, record.id)],
        )

    def test_find_expired_record_without_notifications(self):
        repository = SessionRepository(self.store, self.policy, clock=self.clock)
        events = []
        repository.add_listener(events.append)
        record = repository.create_session(max_inactive_interval=90)
        repository.save(record)

        self.clock.advance(95)
        self.assertIsNone(repository.find_by_id(record.id))
        self.assertEqual([event.kind for event in events], [SESSION_CREATED])

    def test_delete_by_id(self):
        record = self.repository.create_session()
        self.repository.save(record)

        self.assertTrue(self.repository.delete_by_id(record.id))
        self.assertFalse(self.repository.delete_by_id(record.id))

        self.assertFalse(self.store.exists(self.keys.live_key(record.id)))
        self.assertFalse(self.store.exists(self.keys.pending_expiry_key(record.id)))
        self.assertEqual(self.store.set_members(self.keys.bucket_key(T0_MS + 120_000)), set())
        self.assertEqual(self.kinds()[-1], (SESSION_DELETED, record.id))

    def test_sweep_expires_record_and_publishes_event(self):
        record = self.repository.create_session()
        self.repository.save(record)
        self.clock.advance(40)
        self.repository.touch(record.id)

        self.clock.set(T0 + 185)
        result = self.repository.cleanup_expired_sessions()

        self.assertEqual(result.bucket_ms, T0_MS + 180_000)
        self.assertEqual(result.still_present, 0)
        self.assertFalse(self.store.exists(self.keys.live_key(record.id)))
        expired = [event for event in self.events if event.kind == SESSION_EXPIRED]
        self.assertEqual(len(expired), 1)
        self.assertEqual(expired[0].record.last_accessed_time, T0 + 40)

    def test_zero_interval_record_is_never_stored(self):
        record = self.repository.create_session(max_inactive_interval=0)
        self.repository.save(record)

        self.assertIsNone(self.repository.find_by_id(record.id))
        self.assertEqual(self.store.keys(), [])
        self.assertEqual(self.events, [])

    def test_permanent_record_survives(self):
        record = self.repository.create_session(max_inactive_interval=-1)
        self.repository.save(record)

        self.clock.advance(365 * 24 * 3600)
        self.repository.cleanup_expired_sessions()

        self.assertIsNotNone(self.repository.find_by_id(record.id))

    def test_unreadable_payload_is_discarded(self):
        self.store.set_with_ttl(self.keys.live_key("broken"), "{not json")
        with self.assertLogs("sessionlite.repository", level="WARNING"):
            self.assertIsNone(self.repository.find_by_id("broken"))
        self.assertFalse(self.store.exists(self.keys.live_key("broken")))

    def test_unrelated_expired_keys_are_ignored(self):
        self.repository.handle_expired_key(self.keys.live_key("r1"))
        self.repository.handle_expired_key("something:else")
        self.assertEqual(self.events, [])

    def test_expired_notification_without_payload_still_publishes(self):
        self.repository.handle_expired_key(self.keys.pending_expiry_key("r1"))
        self.assertEqual(self.kinds(), [(SESSION_EXPIRED, "r1")])
        self.assertIsNone(self.events[0].record)

    def test_failing_listener_does_not_break_save(self):
        def broken(event):
            raise RuntimeError("listener bug")

        repository = SessionRepository(self.store, self.policy, clock=self.clock)
        repository.add_listener(broken)
        record = repository.create_session()

        with self.assertLogs("sessionlite.repository", level="ERROR"):
            repository.save(record)
        self.assertIsNotNone(repository.find_by_id(record.id))


if __name__ == "__main__":
    unittest.main()
