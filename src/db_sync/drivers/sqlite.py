"""
SQLite 驱动适配器 - 基于标准库 sqlite3

sqlite3 原生支持 :name 命名参数，无需改写。
"""

import sqlite3
from typing import Any, Dict, List, Mapping, Optional

from db_sync.core.dialects import SQLITE
from db_sync.drivers.base import (
    DbConnection,
    DriverAdapter,
    parse_connection_string,
    pick_option,
    rows_to_dicts,
)
from db_sync.exceptions import ConfigurationError
from db_sync.utils.logging import get_logger

logger = get_logger(__name__)


class SQLiteConnection(DbConnection):
    """SQLite 连接，事务由显式 BEGIN/COMMIT/ROLLBACK 控制"""

    def __init__(self, conn: sqlite3.Connection):
        super().__init__(SQLITE)
        self._conn = conn

    async def fetch_all(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        max_rows: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        cursor = self._conn.execute(sql, dict(params or {}))
        try:
            if cursor.description is None:
                return []
            rows = cursor.fetchmany(max_rows) if max_rows else cursor.fetchall()
            return rows_to_dicts(cursor.description, rows)
        finally:
            cursor.close()

    async def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int:
        cursor = self._conn.execute(sql, dict(params or {}))
        try:
            return cursor.rowcount
        finally:
            cursor.close()

    async def _begin(self) -> None:
        self._conn.execute("BEGIN")

    async def _commit(self) -> None:
        self._conn.execute("COMMIT")

    async def _rollback(self) -> None:
        self._conn.execute("ROLLBACK")

    async def _close(self) -> None:
        self._conn.close()


class SQLiteDriver(DriverAdapter):
    """
    SQLite 驱动

    连接字符串可以是文件路径，或 "Data Source=path" 形式。
    """

    dialect = SQLITE

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def open(self, connection_string: str) -> DbConnection:
        path = _resolve_path(connection_string)
        # 自动提交模式，事务完全由 begin/commit 控制
        conn = sqlite3.connect(path, timeout=self.timeout, isolation_level=None)
        logger.debug("sqlite_connected", path=path)
        return SQLiteConnection(conn)


def _resolve_path(connection_string: str) -> str:
    """从连接字符串提取数据库路径"""
    if "=" not in connection_string:
        return connection_string.strip()
    options = parse_connection_string(connection_string)
    path = pick_option(options, "data source", "datasource", "filename", "database")
    if not path:
        raise ConfigurationError(f"SQLite 连接字符串缺少 Data Source: {connection_string}")
    return path
