"""
db-sync 增量同步工具

基于跟踪列（Timestamp/RowVersion）或 SQL Server CDC，
将源库表的变更按批次增量同步到目标库，并以水位线记录同步进度。
"""

from typing import Any

__version__ = "0.1.0"

# 延迟导入，避免循环依赖
__all__ = [
    "SyncEngine",
    "TableSyncOrchestrator",
    "SyncConfiguration",
    "SyncTask",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """延迟加载核心类"""
    if name == "SyncEngine":
        from db_sync.core.engine import SyncEngine
        return SyncEngine
    elif name == "TableSyncOrchestrator":
        from db_sync.core.orchestrator import TableSyncOrchestrator
        return TableSyncOrchestrator
    elif name == "SyncConfiguration":
        from db_sync.models.sync_config import SyncConfiguration
        return SyncConfiguration
    elif name == "SyncTask":
        from db_sync.models.sync_config import SyncTask
        return SyncTask
    elif name == "load_config":
        from db_sync.config import load_config
        return load_config
    raise AttributeError(f"module 'db_sync' has no attribute '{name}'")
