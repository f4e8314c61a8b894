"""
表同步协调器 - 单表同步流程与任务内的表调度

单表流程:
    读取水位线 -> 捕获变更 -> (无变更则结束) -> 在一个事务中写入目标表
    -> 提交后以比较并设置方式保存新水位线

写入失败时事务回滚，水位线保持不变，下次同步会重新捕获同一批数据。
"""

import asyncio
import random
from typing import Dict, Optional, Tuple

from db_sync.core.capture import select_capture_strategy
from db_sync.core.reconciler import RecordReconciler
from db_sync.drivers.factory import DriverFactory, create_driver, open_connection
from db_sync.exceptions import ConfigurationError, WatermarkConflictError
from db_sync.models.result import TableSyncResult, TableSyncStatus, TaskSyncResult
from db_sync.models.sync_config import SyncSettings, SyncTask, TableMapping
from db_sync.storage.watermark import WatermarkStore, watermark_key
from db_sync.utils.logging import get_logger, log_context

logger = get_logger(__name__)

# 错误信息中包含这些关键字时视为临时性错误
RETRYABLE_ERRORS = (
    "connection", "timeout", "closed", "reset", "refused",
    "network", "temporary", "deadlock",
)


class TableSyncOrchestrator:
    """
    表同步协调器

    同一 (任务, 表) 同时最多只有一个同步在执行；
    stop() 之后尚未开始的表标记为 skipped。
    """

    def __init__(
        self,
        watermark_store: WatermarkStore,
        driver_factory: DriverFactory = create_driver,
        reconciler: Optional[RecordReconciler] = None,
        detailed_logging: bool = True
    ):
        """
        初始化协调器

        参数:
            watermark_store: 水位线存储
            driver_factory: 按提供程序标识创建驱动的工厂
            reconciler: 目标表写入器，默认 RecordReconciler
            detailed_logging: 是否记录生成的 SQL
        """
        self.watermark_store = watermark_store
        self.driver_factory = driver_factory
        self.reconciler = reconciler or RecordReconciler(detailed_logging=detailed_logging)
        self.detailed_logging = detailed_logging
        self._stop_event = asyncio.Event()
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """请求停止，正在写入的批次会完成或回滚"""
        if not self._stop_event.is_set():
            logger.info("orchestrator_stop_requested")
        self._stop_event.set()

    def _lock_for(self, task: SyncTask, table_mapping: TableMapping) -> asyncio.Lock:
        key = (task.task_name, table_mapping.source_table)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def sync_table(self, task: SyncTask, table_mapping: TableMapping) -> TableSyncResult:
        """
        同步单个表的一个批次

        参数:
            task: 同步任务
            table_mapping: 表映射

        返回:
            TableSyncResult: succeeded / no_changes / skipped

        异常:
            ConfigurationError: 配置错误
            CaptureError: 捕获失败
            ReconciliationError: 写入失败（事务已回滚）
            WatermarkConflictError: 水位线被并发修改
        """
        async with self._lock_for(task, table_mapping):
            return await self._sync_table_locked(task, table_mapping)

    async def _sync_table_locked(self, task: SyncTask, table_mapping: TableMapping) -> TableSyncResult:
        settings = task.resolve_settings(table_mapping)
        strategy = select_capture_strategy(settings, detailed_logging=self.detailed_logging)
        task_name = task.task_name
        source_table = table_mapping.source_table

        watermark = self.watermark_store.get(task_name, source_table)
        result = TableSyncResult(
            task_name=task_name,
            source_table=source_table,
            target_table=table_mapping.target_table or source_table,
            previous_watermark=watermark,
            new_watermark=watermark,
        )

        logger.info(
            "table_sync_started",
            target_table=result.target_table,
            sync_method=settings.sync_method.value,
            strategy=settings.capture_kind.value,
            watermark=watermark or None,
        )

        source = await open_connection(task.source_db, self.driver_factory)
        try:
            batch = await strategy.capture(source, task, table_mapping, watermark)
        finally:
            await source.close()

        result.rows_captured = len(batch)
        if batch.is_empty():
            logger.info("table_sync_no_changes")
            result.status = TableSyncStatus.NO_CHANGES
            return result

        if self.stop_requested:
            logger.info("table_sync_stopped_before_apply", rows=len(batch))
            result.status = TableSyncStatus.SKIPPED
            return result

        target = await open_connection(task.target_db, self.driver_factory)
        try:
            async with target.transaction():
                applied = await self.reconciler.apply(target, task, table_mapping, batch.rows)
        finally:
            await target.close()
        result.rows_applied = applied

        # 水位线只在提交之后推进
        if batch.next_watermark is not None:
            if not self.watermark_store.compare_and_set(
                task_name, source_table, watermark, batch.next_watermark
            ):
                raise WatermarkConflictError(watermark_key(task_name, source_table), watermark)
            result.new_watermark = batch.next_watermark
        else:
            logger.warning("table_sync_watermark_unchanged", rows=applied)

        result.status = TableSyncStatus.SUCCEEDED
        logger.info(
            "table_sync_completed",
            rows=applied,
            watermark=result.new_watermark or None,
        )
        return result

    async def execute_task(self, task: SyncTask) -> TaskSyncResult:
        """
        执行同步任务中的所有表映射

        每个表独立同步，单表失败只记录到结果中，不影响其他表。
        并行度由 max_parallel_tables 控制。
        """
        result = TaskSyncResult(task_name=task.task_name)
        settings = task.sync_settings
        semaphore = asyncio.Semaphore(settings.max_parallel_tables)

        logger.info(
            "task_sync_started",
            task=task.task_name,
            tables=len(task.table_mappings),
            parallel=settings.max_parallel_tables,
        )

        async def run(mapping: TableMapping) -> TableSyncResult:
            async with semaphore:
                return await self._sync_table_isolated(task, mapping)

        if settings.max_parallel_tables == 1:
            for mapping in task.table_mappings:
                result.tables.append(await run(mapping))
        else:
            result.tables.extend(
                await asyncio.gather(*(run(mapping) for mapping in task.table_mappings))
            )

        result.finish()
        logger.info(
            "task_sync_completed",
            task=task.task_name,
            rows=result.rows_applied,
            failed=len(result.failed_tables),
        )
        return result

    async def _sync_table_isolated(self, task: SyncTask, table_mapping: TableMapping) -> TableSyncResult:
        """同步单表并把异常转换为 failed 结果，临时性错误按重试策略重试"""
        with log_context(task=task.task_name, table=table_mapping.source_table):
            if self.stop_requested:
                logger.info("table_sync_skipped")
                return TableSyncResult(
                    task_name=task.task_name,
                    source_table=table_mapping.source_table,
                    target_table=table_mapping.target_table or table_mapping.source_table,
                    status=TableSyncStatus.SKIPPED,
                    attempts=0,
                )

            attempt = 0
            while True:
                try:
                    result = await self.sync_table(task, table_mapping)
                    result.attempts = attempt + 1
                    return result
                except Exception as e:
                    if not self.stop_requested and self._should_retry(task.sync_settings, attempt, e):
                        delay = self._get_backoff_delay(task.sync_settings, attempt)
                        logger.warning(
                            "table_sync_retry",
                            attempt=attempt + 1,
                            delay=round(delay, 2),
                            error=str(e),
                        )
                        await self._wait(delay)
                        if not self.stop_requested:
                            attempt += 1
                            continue

                    logger.error("table_sync_failed", error=str(e), attempts=attempt + 1, exc_info=True)
                    return TableSyncResult(
                        task_name=task.task_name,
                        source_table=table_mapping.source_table,
                        target_table=table_mapping.target_table or table_mapping.source_table,
                        status=TableSyncStatus.FAILED,
                        attempts=attempt + 1,
                        error=str(e),
                    )

    def _should_retry(self, settings: SyncSettings, attempt: int, error: Exception) -> bool:
        """
        判断是否应重试

        参数:
            settings: 任务同步设置
            attempt: 已重试次数
            error: 异常对象

        返回:
            是否应重试
        """
        if attempt >= settings.retry_count:
            return False

        # 配置错误和水位线冲突重试也不会成功
        if isinstance(error, (ConfigurationError, WatermarkConflictError)):
            return False

        error_msg = str(error).lower()
        if error.__cause__ is not None:
            error_msg += " " + str(error.__cause__).lower()
        return any(err in error_msg for err in RETRYABLE_ERRORS)

    def _get_backoff_delay(self, settings: SyncSettings, attempt: int) -> float:
        """
        计算退避延迟

        参数:
            settings: 任务同步设置
            attempt: 已重试次数

        返回:
            延迟秒数
        """
        delay = settings.retry_delay_seconds * (2 ** attempt)
        jitter = random.uniform(0, 1)
        return min(delay + jitter, settings.max_retry_delay)

    async def _wait(self, delay: float) -> None:
        """等待指定秒数，收到停止请求时提前返回"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
