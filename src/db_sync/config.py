"""
配置加载模块 - 支持 YAML、JSON 和环境变量
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from db_sync.exceptions import ConfigurationError
from db_sync.models.sync_config import SyncConfiguration, expand_env_vars


class ConfigError(ConfigurationError):
    """配置文件错误"""
    pass


def _build_config(raw_config: Any) -> SyncConfiguration:
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("配置文件必须是一个对象")

    try:
        # 展开环境变量
        expanded_config = expand_env_vars(raw_config)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    try:
        return SyncConfiguration.model_validate(expanded_config)
    except ValidationError as e:
        raise ConfigError(f"配置验证失败: {e}") from e


def load_config(path: str | Path) -> SyncConfiguration:
    """
    加载配置文件

    支持 YAML 和旧版 dbsync.config.json（JSON 由 YAML 解析器读取），
    支持环境变量替换，格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}

    参数:
        path: 配置文件路径

    返回:
        SyncConfiguration: 验证后的配置对象

    异常:
        ConfigError: 配置文件不存在、格式错误或验证失败

    示例:
        ```python
        config = load_config("sync.yaml")
        print(config.sync_tasks[0].task_name)
        ```
    """
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    try:
        content = config_path.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise ConfigError(f"读取配置文件失败: {e}") from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"配置文件解析失败: {e}") from e

    return _build_config(raw_config)


def load_config_from_string(content: str) -> SyncConfiguration:
    """
    从字符串加载配置（用于测试）

    参数:
        content: YAML 或 JSON 配置字符串

    返回:
        SyncConfiguration: 验证后的配置对象
    """
    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"配置解析失败: {e}") from e
    return _build_config(raw_config)


def generate_config_template() -> str:
    """
    生成配置模板

    返回:
        str: YAML 配置模板
    """
    return '''# db-sync 增量同步配置

sync_tasks:
  # 基于时间戳列的 MySQL -> SQL Server 同步
  - task_name: "orders_to_dw"
    source_db:
      type: "MySQL"
      provider_name: "MySql.Data.MySqlClient"
      connection_string: "Server=localhost;Port=3306;Database=shop;Uid=${MYSQL_USER};Pwd=${MYSQL_PASSWORD}"
    target_db:
      type: "SQLServer"
      provider_name: "Microsoft.Data.SqlClient"
      connection_string: "Server=dw.example.com,1433;Database=dw;User Id=${MSSQL_USER};Password=${MSSQL_PASSWORD}"
    table_mappings:
      - source_table: "orders"
        target_table: "orders"
        primary_key: "id"
        tracking_column: "updated_at"
        column_mappings:
          - source: "id"
            is_primary_key: true
          - source: "customer_id"
          - source: "amount"
            target: "total_amount"
          - source: "updated_at"
    sync_settings:
      batch_size: 1000          # 每批最多捕获的行数
      sync_interval: 300        # 持续运行时的同步间隔（秒）
      retry_count: 3            # 临时性错误的重试次数
      retry_delay_seconds: 10   # 首次重试延迟，之后指数退避
      max_parallel_tables: 1    # 任务内并行同步的表数量
      sync_method: "Timestamp"  # Timestamp / RowVersion / CDC

  # 基于 SQL Server CDC 的同步
  - task_name: "customers_cdc"
    source_db:
      type: "SQLServer"
      provider_name: "Microsoft.Data.SqlClient"
      connection_string: "Server=erp.example.com;Database=erp;User Id=${MSSQL_USER};Password=${MSSQL_PASSWORD}"
    target_db:
      type: "SQLite"
      provider_name: "sqlite"
      connection_string: "Data Source=./replica.db"
    table_mappings:
      - source_table: "customers"
        column_mappings:
          - source: "customer_id"
            is_primary_key: true
          - source: "name"
          - source: "email"
    sync_settings:
      sync_method: "CDC"
      cdc_settings:
        enable_cdc: true
        capture_instance: "dbo_customers"
        use_legacy_sql_server_cdc: false
        custom_cdc_query: ""

global_settings:
  log_level: "INFO"                 # DEBUG / INFO / WARNING / ERROR（兼容 Information 等写法）
  log_file_path: "logs/dbsync.log"  # 为空则只输出到控制台
  enable_detailed_logging: true     # 在 DEBUG 日志中记录生成的 SQL
  max_log_file_size_mb: 10
  max_log_file_count: 5
  json_logs: false
  watermark_store: "file"           # file / sqlite
  watermark_path: ""                # 为空时 file 用 sync_state.txt，sqlite 用 sync_state.db
'''


def save_config_template(path: str | Path) -> None:
    """
    保存配置模板到文件

    参数:
        path: 输出文件路径
    """
    config_path = Path(path)
    config_path.write_text(generate_config_template(), encoding="utf-8")
