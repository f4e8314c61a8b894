"""
测试配置和共享工具 (unittest 兼容)
"""

import asyncio
import sqlite3
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from db_sync.core.dialects import SQLSERVER, DialectFacts
from db_sync.core.reconciler import PRIMARY_KEY_PARAM
from db_sync.drivers.base import DbConnection
from db_sync.models.sync_config import (
    ColumnMapping,
    DatabaseEndpoint,
    SyncSettings,
    SyncTask,
    TableMapping,
)


# ============================================================================
# SQLite 数据库工具
# ============================================================================

def create_temp_dir() -> Path:
    """创建临时目录"""
    return Path(tempfile.mkdtemp())


def create_orders_db(db_path: Path, rows: Iterable[tuple] = ()) -> None:
    """
    创建带 orders 表的 SQLite 数据库

    rows: (id, customer, amount, updated_at) 元组
    """
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY,
                customer TEXT,
                amount REAL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.executemany(
            "INSERT INTO orders (id, customer, amount, updated_at) VALUES (?, ?, ?, ?)",
            list(rows),
        )
        conn.commit()
    finally:
        conn.close()


def create_target_orders_db(db_path: Path, table: str = "orders_copy") -> None:
    """创建目标库 orders 副本表"""
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id INTEGER PRIMARY KEY,
                customer_name TEXT,
                amount REAL,
                updated_at TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def execute_sql(db_path: Path, sql: str, params: Iterable[Any] = ()) -> None:
    """在数据库上执行一条语句并提交"""
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(sql, tuple(params))
        conn.commit()
    finally:
        conn.close()


def fetch_rows(db_path: Path, sql: str) -> List[tuple]:
    """查询并返回元组行"""
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


# ============================================================================
# 配置工厂函数
# ============================================================================

def create_orders_mapping(**overrides: Any) -> TableMapping:
    """orders -> orders_copy 的表映射，customer 列重命名为 customer_name"""
    values: Dict[str, Any] = {
        "source_table": "orders",
        "target_table": "orders_copy",
        "primary_key": "id",
        "tracking_column": "updated_at",
        "column_mappings": [
            ColumnMapping(source="id", is_primary_key=True),
            ColumnMapping(source="customer", target="customer_name"),
            ColumnMapping(source="amount"),
            ColumnMapping(source="updated_at"),
        ],
    }
    values.update(overrides)
    return TableMapping(**values)


def create_sqlite_task(
    source_path: Path,
    target_path: Path,
    table_mappings: Optional[List[TableMapping]] = None,
    task_name: str = "orders_task",
    **settings: Any
) -> SyncTask:
    """创建源和目标都是 SQLite 文件的同步任务"""
    settings.setdefault("retry_count", 0)
    return SyncTask(
        task_name=task_name,
        source_db=DatabaseEndpoint(
            type="SQLite",
            provider_name="sqlite",
            connection_string=f"Data Source={source_path}",
        ),
        target_db=DatabaseEndpoint(
            type="SQLite",
            provider_name="Microsoft.Data.Sqlite",
            connection_string=str(target_path),
        ),
        table_mappings=table_mappings if table_mappings is not None else [create_orders_mapping()],
        sync_settings=SyncSettings(**settings),
    )


def create_config_dict(source_path: Path, target_path: Path, watermark_path: Path) -> Dict[str, Any]:
    """返回 PascalCase（旧版 JSON）写法的配置字典"""
    return {
        "SyncTasks": [
            {
                "TaskName": "orders_task",
                "SourceDb": {
                    "Type": "SQLite",
                    "ConnectionString": f"Data Source={source_path}",
                    "ProviderName": "sqlite",
                },
                "TargetDb": {
                    "Type": "SQLite",
                    "ConnectionString": f"Data Source={target_path}",
                    "ProviderName": "sqlite",
                },
                "TableMappings": [
                    {
                        "SourceTable": "orders",
                        "TargetTable": "orders_copy",
                        "PrimaryKey": "id",
                        "TrackingColumn": "updated_at",
                        "ColumnMappings": [
                            {"Source": "id", "Target": "id", "IsPrimaryKey": True},
                            {"Source": "customer", "Target": "customer_name"},
                            {"Source": "amount", "Target": "amount"},
                            {"Source": "updated_at", "Target": "updated_at"},
                        ],
                    }
                ],
                "SyncSettings": {
                    "BatchSize": 100,
                    "SyncInterval": 60,
                    "RetryCount": 0,
                    "RetryDelaySeconds": 0,
                    "SyncMethod": "timestamp",
                    "CdcSettings": {"EnableCdc": False},
                },
            }
        ],
        "GlobalSettings": {
            "LogLevel": "Information",
            "LogFilePath": "",
            "EnableDetailedLogging": True,
            "MaxLogFileSizeMB": 10,
            "MaxLogFileCount": 5,
            "WatermarkStore": "file",
            "WatermarkPath": str(watermark_path),
        },
    }


# ============================================================================
# 记录 SQL 的假连接
# ============================================================================

class RecordingConnection(DbConnection):
    """
    记录所有执行语句的假连接

    属性:
        statements: (sql, params) 列表，事务控制记录为 BEGIN/COMMIT/ROLLBACK
        existing_keys: 存在性检查时视为已存在的主键值
        results: fetch_all 依次返回的结果
        fail_on: SQL 包含该子串时抛出的异常
        block_on: SQL 包含该子串时挂起，直到任务被取消
        blocked: 已进入挂起状态
    """

    def __init__(
        self,
        dialect: DialectFacts = SQLSERVER,
        existing_keys: Iterable[Any] = (),
        results: Optional[List[List[Dict[str, Any]]]] = None,
        fail_on: Optional[Dict[str, Exception]] = None,
        block_on: Optional[str] = None
    ):
        super().__init__(dialect)
        self.statements: List[tuple] = []
        self.existing_keys = set(existing_keys)
        self.results = list(results or [])
        self.fail_on = dict(fail_on or {})
        self.max_rows_seen: List[Optional[int]] = []
        self.block_on = block_on
        self.blocked = asyncio.Event()

    def _check_failure(self, sql: str) -> None:
        for fragment, error in self.fail_on.items():
            if fragment in sql:
                raise error

    @property
    def sql(self) -> List[str]:
        return [s for s, _ in self.statements]

    async def fetch_all(self, sql, params=None, max_rows=None):
        self.statements.append((sql, dict(params or {})))
        self.max_rows_seen.append(max_rows)
        self._check_failure(sql)
        if sql.startswith("SELECT COUNT(1)"):
            key = (params or {}).get(PRIMARY_KEY_PARAM)
            return [{"": 1 if key in self.existing_keys else 0}]
        if self.results:
            return self.results.pop(0)
        return []

    async def execute(self, sql, params=None):
        self.statements.append((sql, dict(params or {})))
        self._check_failure(sql)
        if self.block_on and self.block_on in sql:
            self.blocked.set()
            await asyncio.Event().wait()
        return 1

    async def _begin(self):
        self.statements.append(("BEGIN", {}))

    async def _commit(self):
        self.statements.append(("COMMIT", {}))

    async def _rollback(self):
        self.statements.append(("ROLLBACK", {}))

    async def _close(self):
        pass


# ============================================================================
# 工具函数
# ============================================================================

def setup_logging():
    """设置测试日志级别"""
    from db_sync.utils.logging import configure_logging
    configure_logging(log_level="DEBUG", json_format=False)
