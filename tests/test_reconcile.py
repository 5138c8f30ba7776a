"""Tests for refresh, cache fallback and the sync lock.

Copyright (c) Bryn Gwalad 2025
"""

import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import asyncio
import unittest

from api.models import Connectivity, Equipment, EquipmentStatus
from sync.engine import SyncEngine
from sync.reconcile import SyncLock
from fakes import FakeClock, FakeRemote, memory_cache

CAMERA_ROW = {
    "id": "EQ-CAM001",
    "name": "Camera",
    "category": "Photo",
    "status": "AVAILABLE",
    "lastActionDate": "2025-03-01T09:00:00.000Z",
}

LOG_ROW = {
    "id": "k2j3h4g5f",
    "equipmentId": "EQ-CAM001",
    "equipmentName": "Camera",
    "action": "CHECK_IN",
    "userName": "Bob",
    "timestamp": "2025-03-01T09:00:00.000Z",
}


class SyncLockTest(unittest.TestCase):

    def test_expires_after_cooldown(self):
        clock = FakeClock()
        lock = SyncLock(8, clock)
        self.assertFalse(lock.held)

        lock.arm()
        self.assertTrue(lock.held)
        clock.advance(7.9)
        self.assertTrue(lock.held)
        clock.advance(0.2)
        self.assertFalse(lock.held)

    def test_release_and_generation(self):
        lock = SyncLock(8, FakeClock())
        lock.arm()
        lock.arm()
        self.assertEqual(lock.generation, 2)
        lock.release()
        self.assertFalse(lock.held)


class ReconcilerTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.cache = memory_cache()
        self.remote = FakeRemote(items=[dict(CAMERA_ROW)], logs=[dict(LOG_ROW)])
        self.clock = FakeClock()
        self.engine = SyncEngine(self.cache, remote=self.remote, lock_seconds=8, clock=self.clock)
        self.engine.start()

    async def test_refresh_overwrites_state_and_cache(self):
        result = await self.engine.refresh()

        self.assertFalse(result.skipped)
        self.assertEqual(result.connectivity, Connectivity.CONNECTED)
        self.assertEqual([i.id for i in result.items], ["EQ-CAM001"])
        self.assertEqual([i.id for i in self.engine.items], ["EQ-CAM001"])
        self.assertEqual([i.id for i in self.cache.load_items()], ["EQ-CAM001"])
        self.assertEqual([log.id for log in self.cache.load_logs()], ["k2j3h4g5f"])
        self.assertEqual(self.engine.connectivity, Connectivity.CONNECTED)

    async def test_refresh_filters_placeholder_rows(self):
        self.remote.items = [
            {"id": "id", "name": "name", "category": "category"},
            {"id": "", "name": ""},
            dict(CAMERA_ROW),
        ]
        result = await self.engine.refresh()
        self.assertEqual([i.id for i in result.items], ["EQ-CAM001"])

    async def test_numeric_cells_are_kept_as_text(self):
        row = dict(CAMERA_ROW, status="IN_USE", currentHolder="Alice", projectName=2024)
        log = dict(LOG_ROW, id=123456789, notes=42.0)
        self.remote.items = [row]
        self.remote.logs = [log]

        result = await self.engine.refresh()

        self.assertEqual([i.id for i in result.items], ["EQ-CAM001"])
        self.assertEqual(result.items[0].project_name, "2024")
        self.assertEqual([log.id for log in result.logs], ["123456789"])
        self.assertEqual(result.logs[0].notes, "42")
        self.assertEqual([i.id for i in self.cache.load_items()], ["EQ-CAM001"])
        self.assertEqual([log.id for log in self.cache.load_logs()], ["123456789"])

    async def test_both_fetch_failures_are_collected(self):
        self.remote.fail_reads = True
        result = await self.engine.refresh()
        self.assertEqual(self.remote.fetches, 2)
        self.assertEqual(result.connectivity, Connectivity.DEGRADED)

    async def test_invalid_webhook_url_degrades(self):
        engine = SyncEngine(memory_cache(), default_endpoint="https://script.google.com/\x00exec")
        self.addAsyncCleanup(engine.close)
        engine.start()

        result = await engine.refresh()

        self.assertEqual(result.connectivity, Connectivity.DEGRADED)
        self.assertEqual(engine.connectivity, Connectivity.DEGRADED)

    async def test_fetch_failure_falls_back_to_cache(self):
        self.cache.save_items([Equipment(id="EQ-LOCAL", name="Light", category="Lighting")])
        self.engine.start()
        self.remote.fail_reads = True

        result = await self.engine.refresh()

        self.assertEqual([i.id for i in result.items], ["EQ-LOCAL"])
        self.assertEqual([i.id for i in self.cache.load_items()], ["EQ-LOCAL"])
        self.assertEqual([i.id for i in self.engine.items], ["EQ-LOCAL"])
        self.assertEqual(result.connectivity, Connectivity.DEGRADED)
        self.assertEqual(self.engine.connectivity, Connectivity.DEGRADED)

    async def test_not_configured_serves_cache(self):
        self.remote.configured = False
        result = await self.engine.refresh()
        self.assertEqual(result.items, [])
        self.assertEqual(result.connectivity, Connectivity.DEGRADED)

    async def test_lock_suppresses_reversion(self):
        await self.engine.refresh()
        item = self.engine.find_item("EQ-CAM001")

        await self.engine.record_check_out_or_in(item, "Alice", "ShootA")
        self.assertTrue(self.engine.lock.held)

        # the sheet has not caught up yet and still says AVAILABLE
        fetches = self.remote.fetches
        result = await self.engine.refresh()
        self.assertTrue(result.skipped)
        self.assertEqual(self.remote.fetches, fetches)
        self.assertEqual(self.engine.find_item("EQ-CAM001").status, EquipmentStatus.IN_USE)
        self.assertEqual(self.cache.load_items()[0].status, EquipmentStatus.IN_USE)

        self.clock.advance(8.5)
        result = await self.engine.refresh()
        self.assertFalse(result.skipped)
        self.assertEqual(self.engine.find_item("EQ-CAM001").status, EquipmentStatus.AVAILABLE)

    async def test_forced_refresh_clears_lock(self):
        await self.engine.create_item({"name": "Tripod", "category": "Grip"})
        self.assertTrue(self.engine.lock.held)

        result = await self.engine.refresh(force=True)

        self.assertFalse(result.skipped)
        self.assertFalse(self.engine.lock.held)
        # last successful refresh wins: the sheet never got the tripod
        self.assertEqual([i.id for i in self.engine.items], ["EQ-CAM001"])

    async def test_write_during_fetch_discards_stale_snapshot(self):
        await self.engine.refresh()
        item = self.engine.find_item("EQ-CAM001")
        self.remote.fetch_gate = asyncio.Event()

        refresh = asyncio.create_task(self.engine.refresh())
        await asyncio.sleep(0)
        self.assertEqual(self.engine.connectivity, Connectivity.SYNCING)

        await self.engine.record_check_out_or_in(item, "Alice")
        self.remote.fetch_gate.set()
        result = await refresh

        self.assertTrue(result.skipped)
        self.assertEqual(self.engine.find_item("EQ-CAM001").status, EquipmentStatus.IN_USE)
        self.assertEqual(self.engine.connectivity, Connectivity.CONNECTED)

    async def test_periodic_refresh_runs_until_cancelled(self):
        task = asyncio.create_task(self.engine.run_periodic_refresh(0.01))
        for _ in range(50):
            if self.engine.connectivity == Connectivity.CONNECTED:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertGreater(self.remote.fetches, 0)
        self.assertEqual([i.id for i in self.engine.items], ["EQ-CAM001"])


if __name__ == "__main__":
    unittest.main()
