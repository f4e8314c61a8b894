"""
日志配置模块 - structlog 结构化日志

日志同时写到标准输出和（可选的）滚动日志文件。
同步流程中的 task / table 字段通过 log_context 绑定到 contextvars，
并行同步的表之间互不干扰。
"""

import logging
import logging.handlers
import sys
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, List, Optional

import structlog
from structlog.types import EventDict, WrappedLogger

if TYPE_CHECKING:
    from db_sync.models.sync_config import GlobalSettings


def _render_exception(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """exc_info 转为 exception 字段（异常对象只保留类型和消息）"""
    exc_info = event_dict.pop("exc_info", None)
    if isinstance(exc_info, BaseException):
        event_dict["exception"] = f"{type(exc_info).__name__}: {exc_info}"
    elif exc_info:
        event_dict["exception"] = traceback.format_exc()
    return event_dict


def _build_handlers(log_file: Optional[str], max_bytes: int, backup_count: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    return handlers


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    配置结构化日志，可重复调用（后一次覆盖前一次）

    参数:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: 输出 JSON 行，便于日志平台采集
        log_file: 滚动日志文件路径，为空则只输出到控制台
        max_bytes: 单个日志文件最大字节数
        backup_count: 保留的历史日志文件数量
    """
    logging.basicConfig(
        format="%(message)s",
        handlers=_build_handlers(log_file, max_bytes, backup_count),
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    shared: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _render_exception,
    ]
    if json_format:
        renderer: Any = structlog.processors.JSONRenderer(ensure_ascii=False)
        shared = shared[:1] + [structlog.stdlib.add_logger_name] + shared[1:]
    else:
        # 写文件时关闭颜色，日志文件中不出现转义序列
        renderer = structlog.dev.ConsoleRenderer(colors=not log_file, sort_keys=False, pad_level=False)

    structlog.configure(
        processors=shared + [renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_from_settings(settings: "GlobalSettings", level_override: Optional[str] = None) -> None:
    """按全局设置配置日志，level_override（如命令行参数）优先"""
    configure_logging(
        log_level=level_override or settings.log_level,
        json_format=settings.json_logs,
        log_file=settings.log_file_path or None,
        max_bytes=settings.max_log_file_size_mb * 1024 * 1024,
        backup_count=settings.max_log_file_count,
    )


def get_logger(name: Optional[str] = None) -> Any:
    """
    获取结构化日志记录器

    示例:
        >>> logger = get_logger(__name__)
        >>> logger.info("table_sync_started", table="Orders")
    """
    return structlog.get_logger(name)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """
    在作用域内绑定上下文字段，退出时恢复原值

    示例:
        >>> with log_context(task="orders", table="Orders"):
        ...     logger.info("capture_started")
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
