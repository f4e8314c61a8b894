"""
驱动工厂 - 根据提供程序标识创建驱动适配器
"""

from typing import Callable

from db_sync.core.dialects import get_dialect
from db_sync.drivers.base import DbConnection, DriverAdapter
from db_sync.models.sync_config import DatabaseEndpoint
from db_sync.utils.logging import get_logger

logger = get_logger(__name__)

DriverFactory = Callable[[str], DriverAdapter]


def create_driver(provider_name: str) -> DriverAdapter:
    """
    创建驱动适配器

    驱动模块延迟导入，只有用到的数据库才需要安装对应的客户端库。

    异常:
        ConfigurationError: 不支持的提供程序
    """
    dialect = get_dialect(provider_name)
    logger.debug("create_driver", provider=provider_name, dialect=dialect.name)

    if dialect.name == "mysql":
        from db_sync.drivers.mysql import MySQLDriver
        return MySQLDriver()
    elif dialect.name == "sqlserver":
        from db_sync.drivers.sqlserver import SqlServerDriver
        return SqlServerDriver()
    else:
        from db_sync.drivers.sqlite import SQLiteDriver
        return SQLiteDriver()


async def open_connection(
    endpoint: DatabaseEndpoint,
    driver_factory: DriverFactory = create_driver
) -> DbConnection:
    """打开端点对应的连接"""
    driver = driver_factory(endpoint.provider_name)
    return await driver.open(endpoint.connection_string)
