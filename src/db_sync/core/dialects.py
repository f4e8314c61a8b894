"""
数据库方言信息 - 参数前缀、行数限制语法、IDENTITY_INSERT 支持
"""

from enum import Enum
from typing import Dict

from pydantic import BaseModel, ConfigDict

from db_sync.exceptions import ConfigurationError


class LimitStyle(str, Enum):
    """批量限制语法"""
    LIMIT = "limit"  # SELECT ... LIMIT n
    TOP = "top"  # SELECT TOP n ...


class DialectFacts(BaseModel):
    """
    单个提供程序的方言信息

    属性:
        name: 方言名称，同时是驱动适配器的标识
        parameter_prefix: SQL 中命名参数的前缀
        limit_style: 行数限制语法
        supports_identity_insert: 插入显式主键值前是否需要开启 IDENTITY_INSERT
    """
    model_config = ConfigDict(frozen=True)

    name: str
    parameter_prefix: str
    limit_style: LimitStyle
    supports_identity_insert: bool = False

    def param(self, name: str) -> str:
        """返回命名参数占位符"""
        return f"{self.parameter_prefix}{name}"

    def limited_select(self, columns: str, rest: str, limit: int) -> str:
        """
        生成带行数限制的 SELECT

        参数:
            columns: 选择列表
            rest: FROM 之后的部分（含 WHERE / ORDER BY）
            limit: 最大行数
        """
        if self.limit_style == LimitStyle.TOP:
            return f"SELECT TOP {limit} {columns} {rest}"
        return f"SELECT {columns} {rest} LIMIT {limit}"


MYSQL = DialectFacts(name="mysql", parameter_prefix="?", limit_style=LimitStyle.LIMIT)
SQLSERVER = DialectFacts(
    name="sqlserver",
    parameter_prefix="@",
    limit_style=LimitStyle.TOP,
    supports_identity_insert=True,
)
SQLITE = DialectFacts(name="sqlite", parameter_prefix=":", limit_style=LimitStyle.LIMIT)

# 提供程序标识（小写）-> 方言
PROVIDER_DIALECTS: Dict[str, DialectFacts] = {
    "mysql.data.mysqlclient": MYSQL,
    "mysqlconnector": MYSQL,
    "mysql": MYSQL,
    "microsoft.data.sqlclient": SQLSERVER,
    "system.data.sqlclient": SQLSERVER,
    "sqlserver": SQLSERVER,
    "mssql": SQLSERVER,
    "microsoft.data.sqlite": SQLITE,
    "sqlite": SQLITE,
}


def get_dialect(provider_name: str) -> DialectFacts:
    """
    根据提供程序标识获取方言

    异常:
        ConfigurationError: 不支持的提供程序
    """
    dialect = PROVIDER_DIALECTS.get(provider_name.strip().lower())
    if dialect is None:
        raise ConfigurationError(f"不支持的数据库提供程序: {provider_name}")
    return dialect


def parameter_prefix(provider_name: str) -> str:
    """获取提供程序的参数前缀"""
    return get_dialect(provider_name).parameter_prefix
