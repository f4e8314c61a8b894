"""
记录写入器 - 将捕获的变更行逐行 UPSERT 到目标表

每行先按主键检查目标表中是否存在，存在则 UPDATE，否则 INSERT。
整批在调用方开启的同一事务中执行，任何一行失败都会导致整批回滚。
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from db_sync.drivers.base import DbConnection
from db_sync.exceptions import (
    IdentityInsertToggleError,
    ReconciliationError,
    SyncError,
)
from db_sync.models.batch import ChangedRow
from db_sync.models.sync_config import ColumnMapping, SyncTask, TableMapping
from db_sync.utils.logging import get_logger

logger = get_logger(__name__)

PRIMARY_KEY_PARAM = "primaryKeyValue"


class RecordReconciler:
    """
    目标表写入器

    SQL 中的参数名使用目标列名，列顺序与列映射顺序一致。
    """

    def __init__(self, detailed_logging: bool = True):
        """
        参数:
            detailed_logging: 是否在 DEBUG 日志中记录每行执行的操作
        """
        self.detailed_logging = detailed_logging

    async def apply(
        self,
        connection: DbConnection,
        task: SyncTask,
        table_mapping: TableMapping,
        batch: List[ChangedRow]
    ) -> int:
        """
        将一批变更写入目标表

        参数:
            connection: 目标库连接，必须已开启事务
            task: 同步任务
            table_mapping: 表映射
            batch: 变更行

        返回:
            写入行数

        异常:
            ConfigurationError: 没有主键列映射
            ReconciliationError: 任意一行写入失败
        """
        table = table_mapping.target_table or table_mapping.source_table
        pk_mapping = table_mapping.primary_key_mapping()

        if not connection.in_transaction:
            raise ReconciliationError(table, "写入必须在事务中执行")

        use_identity_insert = self._needs_identity_insert(connection, table_mapping)
        applied = 0
        inserted = 0

        for index, row in enumerate(batch):
            try:
                values = self._bind_values(table_mapping, row)
                if await self._record_exists(connection, table, pk_mapping, values):
                    await self._update(connection, table, table_mapping, pk_mapping, values)
                else:
                    if use_identity_insert:
                        async with self.identity_insert(connection, table, row_index=index):
                            await self._insert(connection, table, table_mapping, values)
                    else:
                        await self._insert(connection, table, table_mapping, values)
                    inserted += 1
            except SyncError:
                raise
            except Exception as e:
                raise ReconciliationError(table, str(e), row_index=index) from e
            applied += 1

        logger.debug(
            "reconcile_batch_applied",
            task=task.task_name,
            table=table,
            applied=applied,
            inserted=inserted,
            updated=applied - inserted,
        )
        return applied

    @asynccontextmanager
    async def identity_insert(
        self,
        connection: DbConnection,
        table: str,
        row_index: Optional[int] = None
    ) -> AsyncIterator[None]:
        """
        在作用域内开启目标表的 IDENTITY_INSERT

        退出时无论是否发生异常都会关闭；关闭失败抛出 IdentityInsertToggleError。

        参数:
            row_index: 当前行在批次中的位置，关闭失败时记录到异常中
        """
        await connection.execute(f"SET IDENTITY_INSERT {table} ON")
        if self.detailed_logging:
            logger.debug("identity_insert_on", table=table)
        try:
            yield
        finally:
            try:
                await connection.execute(f"SET IDENTITY_INSERT {table} OFF")
            except Exception as e:
                logger.error("identity_insert_off_failed", table=table, row_index=row_index, error=str(e))
                raise IdentityInsertToggleError(table, str(e), row_index=row_index) from e
            if self.detailed_logging:
                logger.debug("identity_insert_off", table=table)

    def _needs_identity_insert(self, connection: DbConnection, table_mapping: TableMapping) -> bool:
        if table_mapping.identity_insert is not None:
            return table_mapping.identity_insert
        return connection.dialect.supports_identity_insert

    def _bind_values(self, table_mapping: TableMapping, row: ChangedRow) -> Dict[str, Any]:
        """按列映射取出源值，以目标列名为键"""
        values: Dict[str, Any] = {}
        for column in table_mapping.column_mappings:
            if column.source not in row:
                raise ReconciliationError(
                    table_mapping.target_table or table_mapping.source_table,
                    f"变更行缺少源列 {column.source}",
                )
            values[column.target] = row[column.source]
        return values

    async def _record_exists(
        self,
        connection: DbConnection,
        table: str,
        pk_mapping: ColumnMapping,
        values: Dict[str, Any]
    ) -> bool:
        """检查主键对应的记录是否存在"""
        dialect = connection.dialect
        sql = f"SELECT COUNT(1) FROM {table} WHERE {pk_mapping.target} = {dialect.param(PRIMARY_KEY_PARAM)}"
        count = await connection.fetch_scalar(sql, {PRIMARY_KEY_PARAM: values[pk_mapping.target]})
        return int(count or 0) > 0

    async def _update(
        self,
        connection: DbConnection,
        table: str,
        table_mapping: TableMapping,
        pk_mapping: ColumnMapping,
        values: Dict[str, Any]
    ) -> None:
        """更新记录，主键只出现在 WHERE 中"""
        dialect = connection.dialect
        update_columns = [c.target for c in table_mapping.column_mappings if not c.is_primary_key]
        if not update_columns:
            # 只有主键列，记录已存在即一致
            return

        assignments = ", ".join(f"{col} = {dialect.param(col)}" for col in update_columns)
        sql = f"UPDATE {table} SET {assignments} WHERE {pk_mapping.target} = {dialect.param(pk_mapping.target)}"
        if self.detailed_logging:
            logger.debug("reconcile_update", table=table, key=values[pk_mapping.target])
        await connection.execute(sql, values)

    async def _insert(
        self,
        connection: DbConnection,
        table: str,
        table_mapping: TableMapping,
        values: Dict[str, Any]
    ) -> None:
        """插入记录"""
        dialect = connection.dialect
        columns = [c.target for c in table_mapping.column_mappings]
        placeholders = ", ".join(dialect.param(col) for col in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        if self.detailed_logging:
            logger.debug("reconcile_insert", table=table)
        await connection.execute(sql, values)
