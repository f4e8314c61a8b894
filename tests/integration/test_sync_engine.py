"""
SyncEngine 集成测试 (unittest)
"""

import asyncio
import shutil
import unittest
from unittest import IsolatedAsyncioTestCase

from conftest import (
    create_orders_db,
    create_sqlite_task,
    create_target_orders_db,
    create_temp_dir,
    execute_sql,
    fetch_rows,
)

from db_sync.core.engine import SyncEngine
from db_sync.exceptions import ConfigurationError
from db_sync.models.result import SyncState, TableSyncStatus
from db_sync.models.sync_config import DatabaseEndpoint, GlobalSettings, SyncConfiguration
from db_sync.storage.watermark import FileWatermarkStore


class TestSyncEngineIntegration(IsolatedAsyncioTestCase):
    """SyncEngine 集成测试"""

    def setUp(self):
        self.temp_dir = create_temp_dir()
        self.source_path = self.temp_dir / "source.db"
        self.target_path = self.temp_dir / "target.db"
        create_orders_db(self.source_path, [
            (1, "张三", 10.0, "2024-01-01 10:00:00"),
            (2, "李四", 20.0, "2024-01-01 11:00:00"),
        ])
        create_target_orders_db(self.target_path)

        good = create_sqlite_task(self.source_path, self.target_path, task_name="good")
        broken = create_sqlite_task(self.source_path, self.target_path, task_name="broken")
        broken = broken.model_copy(update={
            "target_db": DatabaseEndpoint(provider_name="Npgsql", connection_string="Host=x"),
        })

        self.watermark_path = self.temp_dir / "sync_state.txt"
        self.config = SyncConfiguration(
            sync_tasks=[broken, good],
            global_settings=GlobalSettings(log_file_path="", watermark_path=str(self.watermark_path)),
        )
        self.engine = SyncEngine(self.config)

    def tearDown(self):
        self.engine.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_run_once_isolates_tasks(self):
        """不支持的提供程序只影响所在任务"""
        results = await self.engine.run_once()

        self.assertEqual([r.task_name for r in results], ["broken", "good"])
        self.assertFalse(results[0].ok)
        self.assertEqual(results[0].tables[0].status, TableSyncStatus.FAILED)
        self.assertIn("Npgsql", results[0].tables[0].error)
        self.assertTrue(results[1].ok)
        self.assertEqual(results[1].rows_applied, 2)
        self.assertEqual(len(fetch_rows(self.target_path, "SELECT * FROM orders_copy")), 2)

    async def test_status_after_run(self):
        await self.engine.run_once()
        status = self.engine.get_status()

        self.assertEqual(status.state, SyncState.ERROR)
        self.assertEqual(status.runs, 1)
        self.assertEqual(status.total_rows, 2)
        self.assertIn("broken:orders", status.last_error)
        self.assertFalse(self.engine.is_running())

    async def test_selected_task_only(self):
        results = await self.engine.run_once(["GOOD"])
        self.assertEqual([r.task_name for r in results], ["good"])
        self.assertEqual(self.engine.get_status().state, SyncState.IDLE)

    async def test_unknown_task(self):
        with self.assertRaises(ConfigurationError):
            await self.engine.run_once(["missing"])

    async def test_watermark_persisted_between_engines(self):
        """新引擎从已保存的水位线继续"""
        await self.engine.run_once(["good"])
        self.engine.close()

        execute_sql(
            self.source_path,
            "INSERT INTO orders VALUES (?, ?, ?, ?)",
            (3, "王五", 30.0, "2024-01-02 09:00:00"),
        )
        engine = SyncEngine(self.config, store=FileWatermarkStore(self.watermark_path))
        results = await engine.run_once(["good"])

        self.assertEqual(results[0].tables[0].previous_watermark, "2024-01-01 11:00:00")
        self.assertEqual(results[0].rows_applied, 1)

    async def test_run_forever_until_stopped(self):
        runner = asyncio.create_task(self.engine.run_forever(interval=60, task_names=["good"]))

        for _ in range(200):
            if self.engine.get_status().runs >= 1:
                break
            await asyncio.sleep(0.01)
        self.assertTrue(self.engine.is_running())

        self.engine.stop()
        await asyncio.wait_for(runner, timeout=5)

        self.assertEqual(self.engine.get_status().runs, 1)
        self.assertEqual(self.engine.get_status().state, SyncState.STOPPED)
        self.assertFalse(self.engine.is_running())

    async def test_run_forever_twice_rejected(self):
        runner = asyncio.create_task(self.engine.run_forever(interval=60, task_names=["good"]))
        await asyncio.sleep(0)
        try:
            with self.assertRaises(RuntimeError):
                await self.engine.run_forever(interval=60)
        finally:
            self.engine.stop()
            await asyncio.wait_for(runner, timeout=5)

    async def test_stopped_engine_skips_tasks(self):
        self.engine.stop()
        results = await self.engine.run_once()
        self.assertEqual(results, [])
        self.assertEqual(self.engine.get_status().state, SyncState.STOPPED)


if __name__ == "__main__":
    unittest.main()
