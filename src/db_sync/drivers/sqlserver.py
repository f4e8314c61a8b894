"""
SQL Server 驱动适配器 - 使用 python-tds (pytds)

pytds 是同步驱动，所有调用通过 asyncio.to_thread 执行，避免阻塞事件循环。
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytds

from db_sync.core.dialects import SQLSERVER
from db_sync.drivers.base import (
    DbConnection,
    DriverAdapter,
    parse_connection_string,
    pick_option,
    rows_to_dicts,
    to_pyformat,
)
from db_sync.exceptions import ConfigurationError
from db_sync.utils.logging import get_logger

logger = get_logger(__name__)


class SqlServerConnection(DbConnection):
    """
    SQL Server 连接

    连接以自动提交模式打开，事务通过 T-SQL 显式控制。
    """

    def __init__(self, conn: Any):
        super().__init__(SQLSERVER)
        self._conn = conn

    def _fetch(self, sql: str, args: Optional[Dict[str, Any]], max_rows: Optional[int]) -> List[Dict[str, Any]]:
        with self._conn.cursor() as cursor:
            cursor.execute(sql, args)
            # 跳过变量赋值等不产生结果集的语句
            while cursor.description is None:
                if not cursor.nextset():
                    return []
            rows = cursor.fetchmany(max_rows) if max_rows else cursor.fetchall()
            return rows_to_dicts(cursor.description, list(rows))

    def _execute(self, sql: str, args: Optional[Dict[str, Any]]) -> int:
        with self._conn.cursor() as cursor:
            cursor.execute(sql, args)
            return cursor.rowcount

    async def fetch_all(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        max_rows: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        query, args = to_pyformat(sql, params, self.dialect.parameter_prefix)
        return await asyncio.to_thread(self._fetch, query, args, max_rows)

    async def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int:
        query, args = to_pyformat(sql, params, self.dialect.parameter_prefix)
        return await asyncio.to_thread(self._execute, query, args)

    async def _begin(self) -> None:
        await asyncio.to_thread(self._execute, "BEGIN TRANSACTION", None)

    async def _commit(self) -> None:
        await asyncio.to_thread(self._execute, "COMMIT TRANSACTION", None)

    async def _rollback(self) -> None:
        await asyncio.to_thread(self._execute, "IF @@TRANCOUNT > 0 ROLLBACK TRANSACTION", None)

    async def _close(self) -> None:
        await asyncio.to_thread(self._conn.close)


class SqlServerDriver(DriverAdapter):
    """
    SQL Server 驱动

    连接字符串示例:
        Server=db.example.com,1433;Database=erp;User Id=sync;Password=secret
    """

    dialect = SQLSERVER

    def __init__(self, login_timeout: int = 15, timeout: Optional[float] = None):
        self.login_timeout = login_timeout
        self.timeout = timeout

    async def open(self, connection_string: str) -> DbConnection:
        options = parse_connection_string(connection_string)
        server, port = _split_server(
            pick_option(options, "server", "data source", "datasource", "address", "addr", default="localhost")
        )
        if "port" in options:
            port = int(options["port"])
        database = pick_option(options, "database", "initial catalog")
        if not database:
            raise ConfigurationError("SQL Server 连接字符串缺少 Database")

        try:
            conn = await asyncio.to_thread(
                pytds.connect,
                server=server,
                port=port,
                database=database,
                user=pick_option(options, "user id", "uid", "user", "username"),
                password=pick_option(options, "password", "pwd"),
                autocommit=True,
                login_timeout=self.login_timeout,
                timeout=self.timeout,
            )
        except Exception as e:
            logger.error("sqlserver_connect_failed", server=server, database=database, error=str(e))
            raise

        logger.debug("sqlserver_connected", server=server, database=database)
        return SqlServerConnection(conn)


def _split_server(value: str) -> Tuple[str, int]:
    """拆分 "host,port" 形式的服务器地址"""
    host = value.replace("tcp:", "", 1)
    if "," in host:
        host, port = host.split(",", 1)
        return host.strip(), int(port)
    return host.strip(), 1433
