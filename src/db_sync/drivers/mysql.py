"""
MySQL 驱动适配器 - 使用 aiomysql 实现异步连接
"""

from typing import Any, Dict, List, Mapping, Optional

import aiomysql

from db_sync.core.dialects import MYSQL
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


class MySQLConnection(DbConnection):
    """
    MySQL 连接

    SQL 中的 ?name 参数改写为 aiomysql 的 %(name)s。
    """

    def __init__(self, conn: aiomysql.Connection):
        super().__init__(MYSQL)
        self._conn = conn

    async def fetch_all(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        max_rows: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        query, args = to_pyformat(sql, params, self.dialect.parameter_prefix)
        async with self._conn.cursor() as cursor:
            await cursor.execute(query, args)
            if cursor.description is None:
                return []
            if max_rows:
                rows = await cursor.fetchmany(max_rows)
            else:
                rows = await cursor.fetchall()
            return rows_to_dicts(cursor.description, list(rows))

    async def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int:
        query, args = to_pyformat(sql, params, self.dialect.parameter_prefix)
        async with self._conn.cursor() as cursor:
            return await cursor.execute(query, args)

    async def _begin(self) -> None:
        await self._conn.begin()

    async def _commit(self) -> None:
        await self._conn.commit()

    async def _rollback(self) -> None:
        await self._conn.rollback()

    async def _close(self) -> None:
        self._conn.close()


class MySQLDriver(DriverAdapter):
    """
    MySQL 驱动

    连接字符串示例:
        Server=localhost;Port=3306;Database=shop;Uid=sync;Pwd=secret;CharSet=utf8mb4
    """

    dialect = MYSQL

    def __init__(self, connect_timeout: int = 30):
        self.connect_timeout = connect_timeout

    async def open(self, connection_string: str) -> DbConnection:
        options = parse_connection_string(connection_string)
        host = pick_option(options, "server", "host", "data source", "datasource", default="localhost")
        database = pick_option(options, "database", "initial catalog", "db")
        if not database:
            raise ConfigurationError("MySQL 连接字符串缺少 Database")

        try:
            conn = await aiomysql.connect(
                host=host,
                port=int(pick_option(options, "port", default="3306")),
                user=pick_option(options, "uid", "user id", "user", "username", default="root"),
                password=pick_option(options, "pwd", "password", default=""),
                db=database,
                charset=pick_option(options, "charset", "character set", default="utf8mb4"),
                autocommit=True,
                connect_timeout=self.connect_timeout,
            )
        except Exception as e:
            logger.error("mysql_connect_failed", host=host, database=database, error=str(e))
            raise

        logger.debug("mysql_connected", host=host, database=database)
        return MySQLConnection(conn)
