"""
同步引擎 - 核心协调器
"""

import asyncio
from typing import Iterable, List, Optional

from db_sync.core.orchestrator import TableSyncOrchestrator
from db_sync.drivers.factory import DriverFactory, create_driver
from db_sync.exceptions import ConfigurationError
from db_sync.models.result import SyncState, SyncStatus, TaskSyncResult
from db_sync.models.sync_config import SyncConfiguration, SyncTask
from db_sync.storage.watermark import WatermarkStore, open_watermark_store
from db_sync.utils.logging import get_logger

logger = get_logger(__name__)


class SyncEngine:
    """
    同步引擎 - 按顺序执行配置中的同步任务

    管理完整的同步流程，包括：
    - 单次执行全部或指定任务
    - 按间隔持续运行
    - 任务级错误隔离
    - 运行状态统计
    """

    def __init__(
        self,
        config: SyncConfiguration,
        store: Optional[WatermarkStore] = None,
        driver_factory: Optional[DriverFactory] = None
    ):
        """
        初始化同步引擎

        参数:
            config: 同步配置
            store: 水位线存储，默认按全局设置创建
            driver_factory: 驱动工厂，默认按提供程序标识创建
        """
        self.config = config
        settings = config.global_settings
        self.store = store or open_watermark_store(settings)
        self.orchestrator = TableSyncOrchestrator(
            self.store,
            driver_factory=driver_factory or create_driver,
            detailed_logging=settings.enable_detailed_logging,
        )
        self.status = SyncStatus(tasks=[t.task_name for t in config.sync_tasks])
        self._running = False
        self._stop_event = asyncio.Event()

    def _select_tasks(self, task_names: Optional[Iterable[str]]) -> List[SyncTask]:
        """
        选择要执行的任务

        异常:
            ConfigurationError: 任务名称不存在
        """
        if not task_names:
            return list(self.config.sync_tasks)

        tasks = []
        for name in task_names:
            task = self.config.get_task(name)
            if task is None:
                raise ConfigurationError(f"同步任务不存在: {name}")
            tasks.append(task)
        return tasks

    async def run_once(self, task_names: Optional[Iterable[str]] = None) -> List[TaskSyncResult]:
        """
        执行一轮同步

        参数:
            task_names: 要执行的任务名称，默认全部

        返回:
            每个任务的同步结果；单个任务失败不影响其他任务
        """
        tasks = self._select_tasks(task_names)
        if not tasks:
            logger.warning("no_sync_tasks")
            return []

        self.status.state = SyncState.RUNNING
        logger.info("sync_run_started", tasks=[t.task_name for t in tasks])

        results: List[TaskSyncResult] = []
        for task in tasks:
            if self._stop_event.is_set():
                logger.info("sync_run_interrupted", remaining=task.task_name)
                break
            try:
                result = await self.orchestrator.execute_task(task)
            except Exception as e:
                logger.error("task_sync_failed", task=task.task_name, error=str(e), exc_info=True)
                result = TaskSyncResult(task_name=task.task_name, error=str(e))
                result.finish()
            results.append(result)

        self.status.record_run(results)
        if self._stop_event.is_set():
            self.status.state = SyncState.STOPPED
        elif any(not r.ok for r in results):
            self.status.state = SyncState.ERROR
        else:
            self.status.state = SyncState.IDLE

        logger.info(
            "sync_run_completed",
            tasks=len(results),
            rows=sum(r.rows_applied for r in results),
            failed_tasks=[r.task_name for r in results if not r.ok],
        )
        return results

    async def run_forever(
        self,
        interval: Optional[float] = None,
        task_names: Optional[Iterable[str]] = None
    ) -> None:
        """
        持续运行，直到调用 stop()

        参数:
            interval: 两轮同步之间的间隔（秒），默认取任务中最小的 sync_interval
            task_names: 要执行的任务名称，默认全部
        """
        if self._running:
            raise RuntimeError("同步引擎已在运行")

        tasks = self._select_tasks(task_names)
        if interval is None:
            interval = min((t.sync_settings.sync_interval for t in tasks), default=300)

        self._running = True
        logger.info("sync_engine_start", tasks=[t.task_name for t in tasks], interval=interval)

        try:
            while not self._stop_event.is_set():
                await self.run_once([t.task_name for t in tasks])
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self.status.state = SyncState.STOPPED
            logger.info("sync_engine_stopped", runs=self.status.runs)

    def stop(self) -> None:
        """停止同步，当前批次完成或回滚后退出"""
        logger.info("sync_engine_stopping")
        self._stop_event.set()
        self.orchestrator.stop()

    def is_running(self) -> bool:
        """检查是否运行中"""
        return self._running or self.status.is_running()

    def get_status(self) -> SyncStatus:
        """获取当前状态"""
        return self.status

    def close(self) -> None:
        """释放水位线存储"""
        self.store.close()
