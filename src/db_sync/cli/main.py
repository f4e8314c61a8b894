"""
CLI 命令行入口 - 使用 Click 框架
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click

from db_sync import __version__
from db_sync.config import ConfigError, load_config, save_config_template
from db_sync.exceptions import ConfigurationError
from db_sync.models.result import TableSyncStatus, TaskSyncResult
from db_sync.models.sync_config import CaptureKind, SyncConfiguration
from db_sync.storage.watermark import open_watermark_store
from db_sync.utils.logging import configure_from_settings, configure_logging, get_logger

logger = get_logger(__name__)


@click.group()
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="日志级别（默认使用配置文件中的 log_level）",
)
@click.version_option(version=__version__, prog_name="db-sync")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """
    db-sync 增量同步工具

    基于跟踪列或 SQL Server CDC，将源表的变更增量同步到目标表。
    """
    configure_logging(log_level=log_level or "INFO", json_format=False)

    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _load(config_path: str) -> SyncConfiguration:
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("output_path", type=click.Path(), default="sync.yaml")
def init(output_path: str) -> None:
    """
    生成配置文件模板

    示例:
        db-sync init sync.yaml
    """
    path = Path(output_path)

    if path.exists():
        click.confirm(f"文件 {output_path} 已存在，是否覆盖？", abort=True)

    save_config_template(output_path)
    click.echo(f"✓ 配置模板已生成: {output_path}")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True))
def validate(config_path: str) -> None:
    """
    验证配置文件

    除格式外，还检查每个表映射的主键列和跟踪列设置。

    示例:
        db-sync validate sync.yaml
    """
    config = _load(config_path)

    problems = 0
    click.echo(f"任务数: {len(config.sync_tasks)}")
    for task in config.sync_tasks:
        click.echo(f"[{task.task_name}] {task.source_db.provider_name} -> {task.target_db.provider_name}")
        for mapping in task.table_mappings:
            settings = task.resolve_settings(mapping)
            try:
                mapping.primary_key_mapping()
                if settings.capture_kind == CaptureKind.TRACKING_COLUMN and not settings.tracking_column:
                    raise ConfigurationError(f"表 {mapping.source_table} 未配置跟踪列")
            except ConfigurationError as e:
                problems += 1
                click.echo(f"  ✗ {mapping.source_table}: {e}")
                continue
            click.echo(
                f"  ✓ {mapping.source_table} -> {mapping.target_table}"
                f" ({settings.sync_method.value}, {settings.capture_kind.value})"
            )

    if problems:
        click.echo(f"✗ 发现 {problems} 个问题", err=True)
        sys.exit(1)
    click.echo("✓ 配置验证通过")


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
@click.option(
    "--task",
    "-t",
    "tasks",
    multiple=True,
    help="要执行的任务（可重复，默认全部）",
)
@click.option("--watch", "-w", is_flag=True, help="持续运行，按间隔重复同步")
@click.option("--interval", "-i", type=float, default=None, help="持续运行的同步间隔（秒）")
@click.pass_context
def run(ctx: click.Context, config: str, tasks: Tuple[str, ...], watch: bool, interval: Optional[float]) -> None:
    """
    执行数据同步

    示例:
        db-sync run -c sync.yaml
        db-sync run -c sync.yaml --task orders_to_dw --watch --interval 60
    """
    cfg = _load(config)
    configure_from_settings(cfg.global_settings, level_override=ctx.obj.get("log_level"))

    try:
        results = asyncio.run(_run(cfg, list(tasks), watch, interval))
    except KeyboardInterrupt:
        click.echo("\n同步已停止")
        sys.exit(0)
    except ConfigurationError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)

    _print_results(results)
    if any(not r.ok for r in results):
        sys.exit(1)


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
def status(config: str) -> None:
    """
    查看各表的水位线

    示例:
        db-sync status -c sync.yaml
    """
    cfg = _load(config)
    store = open_watermark_store(cfg.global_settings)
    try:
        watermarks = store.items()
    finally:
        store.close()

    click.echo("db-sync 同步状态")
    click.echo("=" * 40)
    settings = cfg.global_settings
    click.echo(f"水位线存储: {settings.watermark_store} ({settings.resolved_watermark_path()})")
    for task in cfg.sync_tasks:
        click.echo(f"\n[{task.task_name}]")
        for mapping in task.table_mappings:
            token = watermarks.get(f"{task.task_name}:{mapping.source_table}", "")
            click.echo(f"  {mapping.source_table}: {token or '(未同步)'}")


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
@click.option("--task", "-t", "task_name", required=True, help="任务名称")
@click.option(
    "--table",
    "table_name",
    help="重置指定表的水位线（不指定则重置任务内所有表）",
)
@click.confirmation_option(prompt="重置后下次同步将重新捕获全部数据，是否继续？")
def reset(config: str, task_name: str, table_name: Optional[str]) -> None:
    """
    重置水位线

    示例:
        db-sync reset -c sync.yaml --task orders_to_dw --table orders
        db-sync reset -c sync.yaml --task orders_to_dw  # 重置任务内所有表
    """
    cfg = _load(config)
    task = cfg.get_task(task_name)
    if task is None:
        click.echo(f"✗ 同步任务不存在: {task_name}", err=True)
        sys.exit(1)

    tables = [table_name] if table_name else [m.source_table for m in task.table_mappings]
    store = open_watermark_store(cfg.global_settings)
    try:
        for table in tables:
            if store.delete(task.task_name, table):
                click.echo(f"✓ {task.task_name}:{table} 的水位线已重置")
            else:
                click.echo(f"- {task.task_name}:{table} 没有水位线")
    finally:
        store.close()


# ============================================================================
# 异步执行函数
# ============================================================================

async def _run(
    config: SyncConfiguration,
    tasks: List[str],
    watch: bool,
    interval: Optional[float]
) -> List[TaskSyncResult]:
    """执行同步，watch 模式下收到 SIGINT/SIGTERM 后停止"""
    from db_sync.core.engine import SyncEngine

    engine = SyncEngine(config)
    try:
        if not watch:
            return await engine.run_once(tasks or None)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, engine.stop)
            except NotImplementedError:
                # Windows 不支持，依赖 KeyboardInterrupt
                logger.debug("signal_handler_unavailable", signal=sig.name)

        click.echo("持续同步中，按 Ctrl+C 停止...")
        await engine.run_forever(interval=interval, task_names=tasks or None)
        return engine.get_status().last_results
    finally:
        engine.close()


def _print_results(results: List[TaskSyncResult]) -> None:
    """输出同步结果"""
    icons = {
        TableSyncStatus.SUCCEEDED: "✓",
        TableSyncStatus.NO_CHANGES: "=",
        TableSyncStatus.FAILED: "✗",
        TableSyncStatus.SKIPPED: "-",
    }
    for result in results:
        click.echo(f"\n[{result.task_name}] 写入 {result.rows_applied} 行")
        if result.error:
            click.echo(f"  ✗ {result.error}")
        for table in result.tables:
            line = f"  {icons[table.status]} {table.source_table} -> {table.target_table}: {table.status.value}"
            if table.status == TableSyncStatus.SUCCEEDED:
                line += f" ({table.rows_applied} 行)"
            if table.error:
                line += f" - {table.error}"
            click.echo(line)


if __name__ == "__main__":
    cli()
