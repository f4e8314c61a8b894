"""
同步异常定义
"""

from typing import Optional


class SyncError(Exception):
    """同步错误基类"""
    pass


class ConfigurationError(SyncError):
    """配置错误（缺少主键映射、不支持的提供程序等），不重试"""
    pass


class CaptureError(SyncError):
    """变更捕获失败"""

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"捕获表 {table} 的变更失败: {message}")


class ReconciliationError(SyncError):
    """写入目标表失败，整批回滚"""

    def __init__(self, table: str, message: str, row_index: Optional[int] = None):
        self.table = table
        self.row_index = row_index
        location = f" (第 {row_index + 1} 行)" if row_index is not None else ""
        super().__init__(f"同步数据到目标表 {table} 失败{location}: {message}")


class IdentityInsertToggleError(ReconciliationError):
    """关闭 IDENTITY_INSERT 失败，目标表可能仍处于插入标识列模式"""

    def __init__(self, table: str, message: str, row_index: Optional[int] = None):
        super().__init__(table, f"关闭 IDENTITY_INSERT 失败: {message}", row_index=row_index)


class WatermarkConflictError(SyncError):
    """水位线在同步期间被其他写入者修改"""

    def __init__(self, key: str, expected: str):
        self.key = key
        self.expected = expected
        super().__init__(f"水位线 {key} 已被并发修改，期望值: {expected!r}")
