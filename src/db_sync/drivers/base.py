"""
数据库驱动适配器抽象基类

同步核心只依赖这里定义的接口：打开连接、执行查询/命令、事务控制。
SQL 中的命名参数使用方言的逻辑前缀（如 @name），由各驱动改写为自身的参数风格。
"""

import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from db_sync.core.dialects import DialectFacts
from db_sync.exceptions import ConfigurationError
from db_sync.utils.logging import get_logger

logger = get_logger(__name__)


class DbConnection(ABC):
    """
    数据库连接抽象

    属性:
        dialect: 连接所属的方言
    """

    def __init__(self, dialect: DialectFacts):
        self.dialect = dialect
        self._in_transaction = False
        self._closed = False

    @property
    def in_transaction(self) -> bool:
        """是否处于显式事务中"""
        return self._in_transaction

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def fetch_all(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        max_rows: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        执行查询并返回行

        参数:
            sql: SQL 文本
            params: 命名参数（键不含前缀）
            max_rows: 最多读取的行数，None 表示全部

        返回:
            列名到值的字典列表；没有结果集时返回空列表
        """
        raise NotImplementedError

    @abstractmethod
    async def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int:
        """执行命令，返回受影响行数"""
        raise NotImplementedError

    async def fetch_scalar(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """执行查询并返回第一行第一列"""
        rows = await self.fetch_all(sql, params, max_rows=1)
        if not rows:
            return None
        return next(iter(rows[0].values()), None)

    @abstractmethod
    async def _begin(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _commit(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _rollback(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _close(self) -> None:
        raise NotImplementedError

    async def begin(self) -> None:
        """开始事务"""
        if self._in_transaction:
            raise RuntimeError("事务已开始")
        await self._begin()
        self._in_transaction = True

    async def commit(self) -> None:
        """提交事务"""
        if not self._in_transaction:
            raise RuntimeError("没有进行中的事务")
        await self._commit()
        self._in_transaction = False

    async def rollback(self) -> None:
        """回滚事务"""
        if not self._in_transaction:
            return
        try:
            await self._rollback()
        finally:
            self._in_transaction = False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["DbConnection"]:
        """
        事务上下文管理器

        正常退出时提交；任何异常（包括任务取消）都会回滚后继续抛出。
        """
        await self.begin()
        try:
            yield self
        except BaseException:
            try:
                await self.rollback()
            except Exception as e:
                logger.error("transaction_rollback_failed", dialect=self.dialect.name, error=str(e))
            raise
        await self.commit()

    async def close(self) -> None:
        """关闭连接（可重复调用）"""
        if self._closed:
            return
        self._closed = True
        if self._in_transaction:
            try:
                await self.rollback()
            except Exception as e:
                logger.warning("close_rollback_failed", dialect=self.dialect.name, error=str(e))
        await self._close()

    async def __aenter__(self) -> "DbConnection":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


class DriverAdapter(ABC):
    """
    驱动适配器抽象基类

    每个适配器对应一种方言，负责根据连接字符串建立连接。
    """

    dialect: DialectFacts

    @abstractmethod
    async def open(self, connection_string: str) -> DbConnection:
        """
        打开连接

        参数:
            connection_string: 连接字符串
        """
        raise NotImplementedError

    def parameter_prefix(self) -> str:
        """参数前缀"""
        return self.dialect.parameter_prefix


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """
    解析 ADO 风格的连接字符串

    示例:
        >>> parse_connection_string("Server=db1;Port=3306;Database=shop")
        {'server': 'db1', 'port': '3306', 'database': 'shop'}
    """
    options: Dict[str, str] = {}
    for part in connection_string.split(";"):
        if not part.strip():
            continue
        if "=" not in part:
            raise ConfigurationError(f"连接字符串格式错误: {part.strip()!r}")
        key, value = part.split("=", 1)
        options[key.strip().lower()] = value.strip()
    return options


def pick_option(options: Mapping[str, str], *keys: str, default: Optional[str] = None) -> Optional[str]:
    """按候选键顺序取第一个存在的连接参数"""
    for key in keys:
        if key in options and options[key] != "":
            return options[key]
    return default


def to_pyformat(
    sql: str,
    params: Optional[Mapping[str, Any]],
    prefix: str
) -> Tuple[str, Optional[Dict[str, Any]]]:
    """
    将逻辑前缀参数改写为 pyformat 风格（%(name)s）

    只改写 params 中存在的名称，SQL 中声明的变量（如 T-SQL 的 @begin_lsn）保持不变。
    没有参数时原样返回，驱动不会对 % 做格式化。
    """
    if not params:
        return sql, None

    names = sorted(params, key=len, reverse=True)
    pattern = re.compile(
        r"(?<![\w%s])%s(%s)\b" % (
            re.escape(prefix),
            re.escape(prefix),
            "|".join(re.escape(n) for n in names),
        )
    )
    escaped = sql.replace("%", "%%")
    return pattern.sub(lambda m: f"%({m.group(1)})s", escaped), dict(params)


def rows_to_dicts(description: Any, rows: List[Any]) -> List[Dict[str, Any]]:
    """根据游标 description 将元组行转换为字典"""
    columns = [desc[0] for desc in description]
    return [dict(zip(columns, row)) for row in rows]
