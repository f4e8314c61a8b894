"""
模型单元测试 (unittest)
"""

import os
import unittest
from unittest import mock

from pydantic import ValidationError

from db_sync.exceptions import ConfigurationError
from db_sync.models.batch import CapturedBatch
from db_sync.models.result import (
    SyncState,
    SyncStatus,
    TableSyncResult,
    TableSyncStatus,
    TaskSyncResult,
)
from db_sync.models.sync_config import (
    CaptureKind,
    CdcSettings,
    ColumnMapping,
    DatabaseEndpoint,
    GlobalSettings,
    SyncConfiguration,
    SyncMethod,
    SyncSettings,
    SyncTask,
    TableMapping,
    expand_env_vars,
)


def _task(**settings) -> SyncTask:
    return SyncTask(
        task_name="t1",
        source_db=DatabaseEndpoint(connection_string="a.db", provider_name="sqlite"),
        target_db=DatabaseEndpoint(connection_string="b.db", provider_name="sqlite"),
        sync_settings=SyncSettings(**settings),
    )


class TestSyncMethod(unittest.TestCase):
    """同步方法解析测试"""

    def test_parse_case_insensitive(self):
        self.assertEqual(SyncMethod.parse("timestamp"), SyncMethod.TIMESTAMP)
        self.assertEqual(SyncMethod.parse("ROWVERSION"), SyncMethod.ROW_VERSION)
        self.assertEqual(SyncMethod.parse("cdc"), SyncMethod.CDC)

    def test_parse_empty_is_unset(self):
        self.assertIsNone(SyncMethod.parse(""))
        self.assertIsNone(SyncMethod.parse("   "))
        self.assertIsNone(SyncMethod.parse(None))

    def test_parse_unknown(self):
        with self.assertRaises(ValueError):
            SyncMethod.parse("binlog")


class TestTableMapping(unittest.TestCase):
    """表映射测试"""

    def test_defaults(self):
        """测试目标表和目标列默认值"""
        mapping = TableMapping(
            source_table="orders",
            column_mappings=[ColumnMapping(source="id", is_primary_key=True)],
        )
        self.assertEqual(mapping.target_table, "orders")
        self.assertEqual(mapping.column_mappings[0].target, "id")
        self.assertIsNone(mapping.sync_method)
        self.assertIsNone(mapping.identity_insert)

    def test_empty_sync_method_means_unset(self):
        mapping = TableMapping(source_table="orders", sync_method="")
        self.assertIsNone(mapping.sync_method)

    def test_primary_key_mapping(self):
        mapping = TableMapping(
            source_table="orders",
            column_mappings=[
                ColumnMapping(source="name"),
                ColumnMapping(source="order_no", target="no", is_primary_key=True),
            ],
        )
        key = mapping.primary_key_mapping()
        self.assertEqual(key.source, "order_no")
        self.assertEqual(key.target, "no")

    def test_primary_key_missing(self):
        mapping = TableMapping(source_table="orders", column_mappings=[ColumnMapping(source="name")])
        with self.assertRaises(ConfigurationError):
            mapping.primary_key_mapping()

    def test_primary_key_ambiguous(self):
        mapping = TableMapping(
            source_table="orders",
            column_mappings=[
                ColumnMapping(source="a", is_primary_key=True),
                ColumnMapping(source="b", is_primary_key=True),
            ],
        )
        with self.assertRaises(ConfigurationError) as cm:
            mapping.primary_key_mapping()
        self.assertIn("多个主键列", str(cm.exception))

    def test_pascal_case_keys(self):
        """测试旧版 JSON 的 PascalCase 写法"""
        mapping = TableMapping.model_validate({
            "SourceTable": "Orders",
            "TargetTable": "OrdersCopy",
            "TrackingColumn": "UpdatedAt",
            "SyncMethod": "RowVersion",
            "ColumnMappings": [{"Source": "Id", "Target": "Id", "IsPrimaryKey": True}],
        })
        self.assertEqual(mapping.target_table, "OrdersCopy")
        self.assertEqual(mapping.sync_method, SyncMethod.ROW_VERSION)
        self.assertTrue(mapping.column_mappings[0].is_primary_key)


class TestResolveSettings(unittest.TestCase):
    """生效设置计算测试"""

    def test_tracking_column_by_default(self):
        task = _task()
        mapping = TableMapping(source_table="orders", tracking_column="updated_at")
        resolved = task.resolve_settings(mapping)
        self.assertEqual(resolved.sync_method, SyncMethod.TIMESTAMP)
        self.assertEqual(resolved.capture_kind, CaptureKind.TRACKING_COLUMN)
        self.assertEqual(resolved.batch_size, 1000)
        self.assertEqual(resolved.tracking_column, "updated_at")

    def test_table_override_wins(self):
        task = _task(sync_method="Timestamp")
        mapping = TableMapping(source_table="orders", sync_method="RowVersion")
        self.assertEqual(task.resolve_settings(mapping).sync_method, SyncMethod.ROW_VERSION)

    def test_cdc_requires_enable_flag(self):
        task = _task(sync_method="CDC", cdc_settings=CdcSettings(enable_cdc=False))
        resolved = task.resolve_settings(TableMapping(source_table="orders"))
        self.assertEqual(resolved.sync_method, SyncMethod.CDC)
        self.assertEqual(resolved.capture_kind, CaptureKind.TRACKING_COLUMN)

    def test_cdc_modern_with_default_instance(self):
        task = _task(sync_method="CDC", cdc_settings=CdcSettings(enable_cdc=True))
        resolved = task.resolve_settings(TableMapping(source_table="orders"))
        self.assertEqual(resolved.capture_kind, CaptureKind.CDC_MODERN)
        self.assertEqual(resolved.capture_instance, "orders")

    def test_cdc_legacy(self):
        task = _task(
            sync_method="CDC",
            cdc_settings=CdcSettings(enable_cdc=True, use_legacy_sql_server_cdc=True, capture_instance="dbo_orders"),
        )
        resolved = task.resolve_settings(TableMapping(source_table="orders"))
        self.assertEqual(resolved.capture_kind, CaptureKind.CDC_LEGACY)
        self.assertEqual(resolved.capture_instance, "dbo_orders")

    def test_custom_query_wins_over_legacy(self):
        task = _task(
            sync_method="CDC",
            cdc_settings=CdcSettings(
                enable_cdc=True,
                use_legacy_sql_server_cdc=True,
                custom_cdc_query="SELECT * FROM changes",
            ),
        )
        resolved = task.resolve_settings(TableMapping(source_table="orders"))
        self.assertEqual(resolved.capture_kind, CaptureKind.CDC_CUSTOM)
        self.assertEqual(resolved.custom_query, "SELECT * FROM changes")

    def test_resolved_settings_frozen(self):
        resolved = _task().resolve_settings(TableMapping(source_table="orders"))
        with self.assertRaises(ValidationError):
            resolved.batch_size = 5


class TestSyncSettings(unittest.TestCase):
    """任务同步设置测试"""

    def test_defaults(self):
        settings = SyncSettings()
        self.assertEqual(settings.batch_size, 1000)
        self.assertEqual(settings.sync_interval, 300)
        self.assertEqual(settings.retry_count, 3)
        self.assertEqual(settings.retry_delay_seconds, 10)
        self.assertEqual(settings.max_parallel_tables, 1)
        self.assertEqual(settings.sync_method, SyncMethod.TIMESTAMP)
        self.assertFalse(settings.cdc_settings.enable_cdc)

    def test_empty_method_defaults_to_timestamp(self):
        self.assertEqual(SyncSettings(sync_method="").sync_method, SyncMethod.TIMESTAMP)

    def test_batch_size_must_be_positive(self):
        with self.assertRaises(ValidationError):
            SyncSettings(batch_size=0)


class TestGlobalSettings(unittest.TestCase):
    """全局设置测试"""

    def test_log_level_aliases(self):
        self.assertEqual(GlobalSettings(log_level="Information").log_level, "INFO")
        self.assertEqual(GlobalSettings(log_level="warn").log_level, "WARNING")
        self.assertEqual(GlobalSettings(log_level="Trace").log_level, "DEBUG")

    def test_invalid_log_level(self):
        with self.assertRaises(ValidationError):
            GlobalSettings(log_level="LOUD")

    def test_legacy_keys(self):
        settings = GlobalSettings.model_validate({
            "LogLevel": "Warning",
            "LogFilePath": "logs/x.log",
            "MaxLogFileSizeMB": 20,
            "MaxLogFileCount": 2,
        })
        self.assertEqual(settings.log_level, "WARNING")
        self.assertEqual(settings.max_log_file_size_mb, 20)
        self.assertEqual(settings.watermark_store, "file")
        self.assertEqual(settings.watermark_path, "")
        self.assertEqual(settings.resolved_watermark_path(), "sync_state.txt")

    def test_watermark_path_default_follows_store(self):
        self.assertEqual(GlobalSettings(watermark_store="sqlite").resolved_watermark_path(), "sync_state.db")
        settings = GlobalSettings(watermark_store="sqlite", watermark_path="state/marks.db")
        self.assertEqual(settings.resolved_watermark_path(), "state/marks.db")


class TestSyncConfiguration(unittest.TestCase):
    """配置根对象测试"""

    def test_task_names_unique(self):
        with self.assertRaises(ValidationError) as cm:
            SyncConfiguration(sync_tasks=[_task(), _task()])
        self.assertIn("任务名称必须唯一", str(cm.exception))

    def test_get_task_ignores_case(self):
        config = SyncConfiguration(sync_tasks=[_task()])
        self.assertIsNotNone(config.get_task("T1"))
        self.assertIsNone(config.get_task("missing"))


class TestExpandEnvVars(unittest.TestCase):
    """环境变量展开测试"""

    def test_expand_nested(self):
        with mock.patch.dict(os.environ, {"DB_USER": "sync"}):
            value = expand_env_vars({"a": ["Uid=${DB_USER};Pwd=${DB_PWD:-none}"]})
        self.assertEqual(value, {"a": ["Uid=sync;Pwd=none"]})

    def test_missing_variable(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ValueError):
                expand_env_vars("${NOT_SET_ANYWHERE}")


class TestResults(unittest.TestCase):
    """结果模型测试"""

    def _table(self, status, rows=0, error=None):
        return TableSyncResult(
            task_name="t1",
            source_table="orders",
            target_table="orders",
            status=status,
            rows_applied=rows,
            error=error,
        )

    def test_captured_batch(self):
        batch = CapturedBatch()
        self.assertTrue(batch.is_empty())
        self.assertEqual(len(CapturedBatch(rows=[{"id": 1}], next_watermark="1")), 1)

    def test_task_result_aggregates(self):
        result = TaskSyncResult(
            task_name="t1",
            tables=[
                self._table(TableSyncStatus.SUCCEEDED, rows=3),
                self._table(TableSyncStatus.FAILED, error="boom"),
                self._table(TableSyncStatus.NO_CHANGES),
            ],
        )
        self.assertEqual(result.rows_applied, 3)
        self.assertEqual(len(result.failed_tables), 1)
        self.assertFalse(result.ok)
        self.assertTrue(result.tables[2].ok)

    def test_status_records_run(self):
        status = SyncStatus(tasks=["t1"])
        self.assertEqual(status.state, SyncState.IDLE)
        result = TaskSyncResult(
            task_name="t1",
            tables=[self._table(TableSyncStatus.SUCCEEDED, rows=2), self._table(TableSyncStatus.FAILED, error="x")],
        )
        status.record_run([result])
        self.assertEqual(status.runs, 1)
        self.assertEqual(status.total_rows, 2)
        self.assertIn("t1:orders", status.last_error)
        self.assertEqual(status.summary()["runs"], 1)


if __name__ == "__main__":
    unittest.main()
