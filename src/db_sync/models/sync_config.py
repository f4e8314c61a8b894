"""
同步配置模型 - 使用 Pydantic 进行配置验证

字段同时接受 snake_case（YAML）和 PascalCase（旧版 dbsync.config.json）两种写法。
"""

import os
import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_pascal

from db_sync.exceptions import ConfigurationError


class SyncMethod(str, Enum):
    """同步方法"""
    TIMESTAMP = "Timestamp"      # 时间戳列
    ROW_VERSION = "RowVersion"   # 行版本列
    CDC = "CDC"                  # 变更数据捕获

    @classmethod
    def parse(cls, value: Any) -> Optional["SyncMethod"]:
        """不区分大小写解析，空值返回 None"""
        if value is None or isinstance(value, cls):
            return value
        text = str(value).strip()
        if not text:
            return None
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        raise ValueError(f"不支持的同步方法: {value}，可选: {[m.value for m in cls]}")


class CaptureKind(str, Enum):
    """变更捕获策略（封闭集合）"""
    TRACKING_COLUMN = "tracking_column"  # Timestamp / RowVersion
    CDC_CUSTOM = "cdc_custom"            # 自定义 CDC 查询
    CDC_LEGACY = "cdc_legacy"            # 基于函数的旧版 CDC
    CDC_MODERN = "cdc_modern"            # 基于存储过程的 CDC


class _ConfigModel(BaseModel):
    """配置模型基类，字段别名为 PascalCase"""
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)


class DatabaseEndpoint(_ConfigModel):
    """
    数据库端点配置

    属性:
        type: 数据库类型标记（如 MySQL、SQLServer），仅作说明
        connection_string: 连接字符串
        provider_name: 提供程序标识，用于选择方言和驱动
    """
    type: str = Field(default="", description="数据库类型")
    connection_string: str = Field(..., min_length=1, description="连接字符串")
    provider_name: str = Field(..., min_length=1, description="提供程序标识")


class ColumnMapping(_ConfigModel):
    """
    列映射配置

    属性:
        source: 源列名
        target: 目标列名（默认同源列名）
        is_primary_key: 是否为主键列
    """
    source: str = Field(..., min_length=1, description="源列名")
    target: Optional[str] = Field(default=None, description="目标列名")
    is_primary_key: bool = Field(default=False, description="是否主键")

    @model_validator(mode="after")
    def set_default_target(self) -> "ColumnMapping":
        """设置默认目标列名"""
        if not self.target:
            self.target = self.source
        return self


class TableMapping(_ConfigModel):
    """
    表级映射配置

    属性:
        source_table: 源表名
        target_table: 目标表名（默认同源表名）
        primary_key: 主键列名（仅作说明，实际主键以 ColumnMapping.is_primary_key 为准）
        tracking_column: 跟踪列（Timestamp/RowVersion 方式使用）
        sync_method: 表级同步方法，覆盖任务级设置
        column_mappings: 列映射，顺序即生成 SQL 的列顺序
        identity_insert: 是否在插入时开启 IDENTITY_INSERT，None 表示由目标方言决定
    """
    source_table: str = Field(..., min_length=1, description="源表名")
    target_table: Optional[str] = Field(default=None, description="目标表名")
    primary_key: str = Field(default="", description="主键列名（说明用）")
    tracking_column: str = Field(default="", description="跟踪列")
    sync_method: Optional[SyncMethod] = Field(default=None, description="表级同步方法")
    column_mappings: List[ColumnMapping] = Field(default_factory=list, description="列映射")
    identity_insert: Optional[bool] = Field(default=None, description="IDENTITY_INSERT 覆盖")

    @field_validator("sync_method", mode="before")
    @classmethod
    def parse_sync_method(cls, v: Any) -> Optional[SyncMethod]:
        return SyncMethod.parse(v)

    @model_validator(mode="after")
    def set_default_target(self) -> "TableMapping":
        """设置默认目标表名"""
        if not self.target_table:
            self.target_table = self.source_table
        return self

    def primary_key_mapping(self) -> ColumnMapping:
        """
        获取主键列映射

        异常:
            ConfigurationError: 没有或有多个列被标记为主键
        """
        keys = [c for c in self.column_mappings if c.is_primary_key]
        if not keys:
            raise ConfigurationError(f"表 {self.source_table} 没有定义主键列")
        if len(keys) > 1:
            raise ConfigurationError(
                f"表 {self.source_table} 定义了多个主键列: {[c.source for c in keys]}"
            )
        return keys[0]

    def source_columns(self) -> List[str]:
        """按映射顺序返回源列名"""
        return [c.source for c in self.column_mappings]


class CdcSettings(_ConfigModel):
    """
    CDC（变更数据捕获）配置

    属性:
        enable_cdc: 是否启用 CDC
        capture_instance: 捕获实例名称，为空时使用源表名
        use_legacy_sql_server_cdc: 使用基于函数的旧版 CDC 查询
        custom_cdc_query: 自定义 CDC 查询，完全替代内置 SQL
    """
    enable_cdc: bool = Field(default=False, description="是否启用 CDC")
    capture_instance: str = Field(default="", description="捕获实例名称")
    use_legacy_sql_server_cdc: bool = Field(default=False, description="旧版 CDC")
    custom_cdc_query: str = Field(default="", description="自定义 CDC 查询")


class SyncSettings(_ConfigModel):
    """
    任务级同步设置

    属性:
        batch_size: 每次捕获的最大行数
        sync_interval: 持续运行模式下两次同步的间隔（秒）
        retry_count: 临时性错误的最大重试次数
        retry_delay_seconds: 首次重试延迟（秒），之后指数退避
        max_retry_delay: 最大退避延迟（秒）
        max_parallel_tables: 同一任务内并行同步的表数量
        sync_method: 同步方法
        cdc_settings: CDC 配置
    """
    batch_size: int = Field(default=1000, ge=1, description="批量大小")
    sync_interval: int = Field(default=300, ge=1, description="同步间隔（秒）")
    retry_count: int = Field(default=3, ge=0, description="重试次数")
    retry_delay_seconds: float = Field(default=10, ge=0, description="重试延迟（秒）")
    max_retry_delay: float = Field(default=300, ge=0, description="最大退避延迟（秒）")
    max_parallel_tables: int = Field(default=1, ge=1, description="并行表数量")
    sync_method: SyncMethod = Field(default=SyncMethod.TIMESTAMP, description="同步方法")
    cdc_settings: CdcSettings = Field(default_factory=CdcSettings, description="CDC 配置")

    @field_validator("sync_method", mode="before")
    @classmethod
    def parse_sync_method(cls, v: Any) -> SyncMethod:
        return SyncMethod.parse(v) or SyncMethod.TIMESTAMP


class ResolvedTableSettings(BaseModel):
    """
    单表同步时生效的设置

    每次表同步计算一次，捕获和写入逻辑只读取这里的值。
    """
    model_config = ConfigDict(frozen=True)

    sync_method: SyncMethod
    capture_kind: CaptureKind
    batch_size: int
    capture_instance: str = ""
    custom_query: str = ""
    tracking_column: str = ""


class SyncTask(_ConfigModel):
    """
    同步任务：一个源库到一个目标库的配对

    属性:
        task_name: 任务名称，水位线键的一部分
        source_db: 源数据库
        target_db: 目标数据库
        table_mappings: 表映射列表（按顺序同步）
        sync_settings: 任务级同步设置
    """
    task_name: str = Field(..., min_length=1, description="任务名称")
    source_db: DatabaseEndpoint = Field(..., description="源数据库")
    target_db: DatabaseEndpoint = Field(..., description="目标数据库")
    table_mappings: List[TableMapping] = Field(default_factory=list, description="表映射")
    sync_settings: SyncSettings = Field(default_factory=SyncSettings, description="同步设置")

    def resolve_settings(self, mapping: TableMapping) -> ResolvedTableSettings:
        """
        计算表的生效设置

        表级 sync_method 优先，否则使用任务级设置；
        仅当方法为 CDC 且启用 CDC 时选择 CDC 捕获策略。
        """
        settings = self.sync_settings
        method = mapping.sync_method or settings.sync_method
        cdc = settings.cdc_settings

        capture_instance = ""
        custom_query = ""
        if method == SyncMethod.CDC and cdc.enable_cdc:
            capture_instance = cdc.capture_instance or mapping.source_table
            if cdc.custom_cdc_query.strip():
                kind = CaptureKind.CDC_CUSTOM
                custom_query = cdc.custom_cdc_query
            elif cdc.use_legacy_sql_server_cdc:
                kind = CaptureKind.CDC_LEGACY
            else:
                kind = CaptureKind.CDC_MODERN
        else:
            kind = CaptureKind.TRACKING_COLUMN

        return ResolvedTableSettings(
            sync_method=method,
            capture_kind=kind,
            batch_size=settings.batch_size,
            capture_instance=capture_instance,
            custom_query=custom_query,
            tracking_column=mapping.tracking_column,
        )


_LOG_LEVEL_ALIASES = {
    "TRACE": "DEBUG",
    "DEBUG": "DEBUG",
    "INFORMATION": "INFO",
    "INFO": "INFO",
    "WARN": "WARNING",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
    "NONE": "CRITICAL",
}

# 未配置 watermark_path 时各存储类型使用的文件
_DEFAULT_WATERMARK_PATHS = {
    "file": "sync_state.txt",
    "sqlite": "sync_state.db",
}


class GlobalSettings(_ConfigModel):
    """
    全局设置

    属性:
        log_level: 日志级别（兼容 Information/Warning 等写法）
        log_file_path: 日志文件路径，为空表示仅输出到控制台
        enable_detailed_logging: 为 True 时记录生成的 SQL
        max_log_file_size_mb: 单个日志文件最大大小（MB）
        max_log_file_count: 保留的日志文件数量
        json_logs: 是否输出 JSON 格式日志
        watermark_store: 水位线存储类型 (file/sqlite)
        watermark_path: 水位线存储路径，为空时使用存储类型的默认文件
    """
    log_level: str = Field(default="INFO", description="日志级别")
    log_file_path: str = Field(default="logs/dbsync.log", description="日志文件路径")
    enable_detailed_logging: bool = Field(default=True, description="记录 SQL")
    max_log_file_size_mb: int = Field(
        default=10, ge=1, alias="MaxLogFileSizeMB", description="日志文件大小（MB）"
    )
    max_log_file_count: int = Field(default=5, ge=1, description="日志文件数量")
    json_logs: bool = Field(default=False, description="JSON 日志")
    watermark_store: Literal["file", "sqlite"] = Field(default="file", description="水位线存储")
    watermark_path: str = Field(default="", description="水位线存储路径，为空按存储类型取默认文件名")

    def resolved_watermark_path(self) -> str:
        """水位线存储路径：file 默认 sync_state.txt，sqlite 默认 sync_state.db"""
        return self.watermark_path or _DEFAULT_WATERMARK_PATHS[self.watermark_store]

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        level = _LOG_LEVEL_ALIASES.get(v.strip().upper())
        if level is None:
            raise ValueError(f"日志级别必须是以下之一: {sorted(_LOG_LEVEL_ALIASES)}")
        return level


class SyncConfiguration(_ConfigModel):
    """
    配置根对象

    属性:
        sync_tasks: 同步任务列表
        global_settings: 全局设置
    """
    sync_tasks: List[SyncTask] = Field(default_factory=list, description="同步任务")
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings, description="全局设置")

    @model_validator(mode="after")
    def validate_task_names_unique(self) -> "SyncConfiguration":
        """验证任务名称唯一"""
        names = [t.task_name for t in self.sync_tasks]
        if len(names) != len(set(names)):
            raise ValueError("任务名称必须唯一")
        return self

    def get_task(self, task_name: str) -> Optional[SyncTask]:
        """获取指定名称的同步任务（不区分大小写）"""
        for task in self.sync_tasks:
            if task.task_name.lower() == task_name.lower():
                return task
        return None


def expand_env_vars(value: Any) -> Any:
    """
    递归展开值中的环境变量

    支持格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:-]+)(?::-([^}]*))?\}'

        def replacer(match: "re.Match[str]") -> str:
            var_name = match.group(1)
            default_val = match.group(2)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default_val is not None:
                    return default_val
                raise ValueError(f"环境变量 {var_name} 未设置且无默认值")
            return env_value

        return re.sub(pattern, replacer, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value
