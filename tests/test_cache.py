"""Tests for the local cache store.

Copyright (c) Bryn Gwalad 2025
"""

import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from datetime import datetime, timedelta, timezone
import unittest

from api.models import AuditLog, Equipment, EquipmentStatus, LogAction
from sync.cache import ITEMS_KEY, LOGS_KEY
from fakes import memory_cache


def make_log(n: int) -> AuditLog:
    ts = datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=n)
    return AuditLog(
        id=f"log-{n}",
        equipment_id="EQ-1",
        equipment_name="Camera",
        action=LogAction.CHECK_OUT,
        user_name="Alice",
        timestamp=ts,
    )


class LocalCacheStoreTest(unittest.TestCase):

    def setUp(self):
        self.cache = memory_cache()

    def test_empty_store_reads_empty(self):
        self.assertEqual(self.cache.load_items(), [])
        self.assertEqual(self.cache.load_logs(), [])
        self.assertIsNone(self.cache.load_endpoint())

    def test_upsert_replaces_by_id(self):
        self.cache.upsert_item(Equipment(id="EQ-1", name="Camera", category="Photo"))
        self.cache.upsert_item(Equipment(id="EQ-2", name="Tripod", category="Grip"))
        self.cache.upsert_item(Equipment(
            id="EQ-1", name="Camera", category="Photo",
            status=EquipmentStatus.IN_USE, current_holder="Alice",
        ))

        items = self.cache.load_items()
        matches = [i for i in items if i.id == "EQ-1"]
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].status, EquipmentStatus.IN_USE)
        self.assertEqual(matches[0].current_holder, "Alice")
        # new entries go to the front, replacements keep their slot
        self.assertEqual([i.id for i in items], ["EQ-2", "EQ-1"])

    def test_remove_item(self):
        self.cache.save_items([
            Equipment(id="EQ-1", name="Camera", category="Photo"),
            Equipment(id="EQ-2", name="Tripod", category="Grip"),
        ])
        self.cache.remove_item("EQ-1")
        self.assertEqual([i.id for i in self.cache.load_items()], ["EQ-2"])

        before = self.cache._read(ITEMS_KEY)
        self.cache.remove_item("missing")
        self.assertEqual(self.cache._read(ITEMS_KEY), before)

    def test_log_retention_keeps_newest_hundred(self):
        for n in range(105):
            self.cache.upsert_log(make_log(n))

        logs = self.cache.load_logs()
        self.assertEqual(len(logs), 100)
        self.assertEqual(logs[0].id, "log-104")
        self.assertEqual(logs[-1].id, "log-5")
        self.assertEqual([log.timestamp for log in logs], sorted((log.timestamp for log in logs), reverse=True))

    def test_save_overwrites_snapshot(self):
        self.cache.save_items([Equipment(id="EQ-1", name="Camera", category="Photo")])
        self.cache.save_items([Equipment(id="EQ-9", name="Light", category="Lighting")])
        self.assertEqual([i.id for i in self.cache.load_items()], ["EQ-9"])

    def test_corrupt_snapshot_reads_empty(self):
        self.cache._write(ITEMS_KEY, "{not json")
        self.cache._write(LOGS_KEY, '{"id": "not-a-list"}')
        self.assertEqual(self.cache.load_items(), [])
        self.assertEqual(self.cache.load_logs(), [])

    def test_unreadable_rows_are_skipped(self):
        self.cache._write(ITEMS_KEY, '[{"id": "EQ-1", "name": "Camera", "category": "Photo"}, {"id": "EQ-2", "status": "BROKEN"}]')
        self.assertEqual([i.id for i in self.cache.load_items()], ["EQ-1"])

    def test_endpoint_override(self):
        self.cache.save_endpoint("https://script.google.com/macros/s/abc/exec")
        self.assertEqual(self.cache.load_endpoint(), "https://script.google.com/macros/s/abc/exec")
        self.cache.save_endpoint(None)
        self.assertIsNone(self.cache.load_endpoint())


if __name__ == "__main__":
    unittest.main()
