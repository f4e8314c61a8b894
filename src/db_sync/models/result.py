"""
同步结果与运行状态模型
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class TableSyncStatus(str, Enum):
    """单表同步结果"""
    SUCCEEDED = "succeeded"  # 已写入并推进水位线
    NO_CHANGES = "no_changes"  # 没有需要同步的数据
    FAILED = "failed"  # 失败，水位线未变
    SKIPPED = "skipped"  # 因停止请求而跳过


class SyncState(str, Enum):
    """引擎状态"""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class TableSyncResult(BaseModel):
    """
    单表同步结果

    属性:
        task_name: 任务名称
        source_table: 源表名
        target_table: 目标表名
        status: 结果状态
        rows_captured: 捕获行数
        rows_applied: 写入行数
        previous_watermark: 同步前水位线
        new_watermark: 同步后水位线
        attempts: 尝试次数（含重试）
        error: 错误信息
    """
    task_name: str
    source_table: str
    target_table: str
    status: TableSyncStatus = Field(default=TableSyncStatus.NO_CHANGES)
    rows_captured: int = Field(default=0, ge=0)
    rows_applied: int = Field(default=0, ge=0)
    previous_watermark: str = Field(default="")
    new_watermark: str = Field(default="")
    attempts: int = Field(default=1, ge=0)
    error: Optional[str] = Field(default=None)

    @property
    def ok(self) -> bool:
        """是否成功（包括无变更）"""
        return self.status in (TableSyncStatus.SUCCEEDED, TableSyncStatus.NO_CHANGES)


class TaskSyncResult(BaseModel):
    """
    任务同步结果
    """
    task_name: str
    tables: List[TableSyncResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = Field(default=None)
    error: Optional[str] = Field(default=None)

    @property
    def rows_applied(self) -> int:
        """所有表写入行数之和"""
        return sum(t.rows_applied for t in self.tables)

    @property
    def failed_tables(self) -> List[TableSyncResult]:
        """失败的表"""
        return [t for t in self.tables if t.status == TableSyncStatus.FAILED]

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed_tables

    def finish(self) -> None:
        """记录结束时间"""
        self.finished_at = datetime.now(timezone.utc)


class SyncStatus(BaseModel):
    """
    同步引擎运行状态
    """
    state: SyncState = Field(default=SyncState.IDLE, description="当前状态")
    tasks: List[str] = Field(default_factory=list, description="任务列表")
    runs: int = Field(default=0, description="已完成的同步轮次")
    total_rows: int = Field(default=0, description="累计写入行数")
    last_run_at: Optional[datetime] = Field(default=None, description="最近一次同步时间")
    last_results: List[TaskSyncResult] = Field(default_factory=list, description="最近一次结果")
    last_error: Optional[str] = Field(default=None, description="最后错误信息")
    last_error_at: Optional[datetime] = Field(default=None, description="最后错误时间")

    def is_running(self) -> bool:
        """检查是否运行中"""
        return self.state == SyncState.RUNNING

    def record_run(self, results: List[TaskSyncResult]) -> None:
        """记录一轮同步结果"""
        self.runs += 1
        self.total_rows += sum(r.rows_applied for r in results)
        self.last_run_at = datetime.now(timezone.utc)
        self.last_results = results
        for result in results:
            for table in result.failed_tables:
                self.record_error(f"{table.task_name}:{table.source_table}: {table.error}")
            if result.error:
                self.record_error(f"{result.task_name}: {result.error}")

    def record_error(self, error: str) -> None:
        """记录错误"""
        self.last_error = error
        self.last_error_at = datetime.now(timezone.utc)

    def summary(self) -> dict[str, Any]:
        """状态摘要"""
        return {
            "state": self.state.value,
            "runs": self.runs,
            "total_rows": self.total_rows,
            "last_error": self.last_error,
        }
