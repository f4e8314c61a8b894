"""
变更捕获策略 - 根据水位线查询源表中的变更行

支持的策略:
    - 跟踪列（Timestamp / RowVersion）: trackingColumn > 水位线
    - CDC 自定义查询: 原样执行配置的查询
    - CDC 旧版: cdc.fn_cdc_get_all_changes_<实例> 函数
    - CDC 新版: sys.sp_cdc_get_all_changes_<实例> 存储过程

水位线格式:
    - 跟踪列: 最后一行跟踪列值的字符串形式（二进制值为 0x 十六进制）
    - CDC: 最后一行 __$start_lsn 原始字节的 base64 编码
"""

import base64
import binascii
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Type

from db_sync.core.dialects import DialectFacts
from db_sync.drivers.base import DbConnection
from db_sync.exceptions import CaptureError, ConfigurationError, SyncError
from db_sync.models.batch import CapturedBatch, ChangedRow
from db_sync.models.sync_config import (
    CaptureKind,
    ResolvedTableSettings,
    SyncMethod,
    SyncTask,
    TableMapping,
)
from db_sync.utils.logging import get_logger

logger = get_logger(__name__)

CDC_SYSTEM_PREFIX = "__$"
START_LSN_COLUMN = "__$start_lsn"
LAST_SYNC_VALUE_PARAM = "lastSyncValue"
LAST_SYNC_LSN_PARAM = "lastSyncLsn"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ============================================================================
# 水位线编解码
# ============================================================================

def encode_lsn(lsn: bytes) -> str:
    """LSN 原始字节 -> base64 水位线"""
    return base64.b64encode(bytes(lsn)).decode("ascii")


def decode_lsn(watermark: str, table: str = "") -> bytes:
    """
    base64 水位线 -> LSN 原始字节

    异常:
        CaptureError: 水位线不是合法的 base64
    """
    try:
        return base64.b64decode(watermark.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise CaptureError(table, f"无法解析 LSN 水位线 {watermark!r}: {e}") from e


def format_tracking_value(value: Any) -> str:
    """跟踪列值 -> 水位线字符串"""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex().upper()
    return str(value)


def compute_next_watermark(rows: List[ChangedRow], tracking_column: str = "") -> Optional[str]:
    """
    根据批次最后一行计算新水位线

    优先使用 __$start_lsn（base64），其次使用跟踪列值；
    两者都没有时返回 None，表示水位线保持不变。
    """
    if not rows:
        return None

    last_row = rows[-1]
    lsn = last_row.get(START_LSN_COLUMN)
    if lsn is not None:
        return encode_lsn(lsn)

    if tracking_column:
        value = _get_ci(last_row, tracking_column)
        if value is not None:
            return format_tracking_value(value)

    return None


def strip_cdc_columns(rows: List[ChangedRow]) -> List[ChangedRow]:
    """去掉 CDC 系统列（__$ 前缀），保留 __$start_lsn"""
    return [
        {
            name: value
            for name, value in row.items()
            if not name.startswith(CDC_SYSTEM_PREFIX) or name == START_LSN_COLUMN
        }
        for row in rows
    ]


def trim_boundary_ties(rows: List[ChangedRow], key: str, batch_size: int) -> List[ChangedRow]:
    """
    截断到 batch_size 行，并处理跨越批次边界的相同排序值

    查询比 batch_size 多取一行。多出的一行与批次最后一行排序值相同时，
    该排序值被批次截断，而下一次查询使用严格大于（或递增后的 LSN），
    剩余行会被跳过；因此去掉批次末尾与之相同的行，让它们在下一批中完整出现。
    整批都是同一排序值时无法拆分，原样返回。
    """
    if len(rows) <= batch_size:
        return rows

    lookahead = rows[batch_size]
    rows = rows[:batch_size]
    if not key:
        return rows

    last_value = _get_ci(rows[-1], key)
    if last_value is None or _get_ci(lookahead, key) != last_value:
        return rows

    cut = len(rows)
    while cut > 0 and _get_ci(rows[cut - 1], key) == last_value:
        cut -= 1

    if cut == 0:
        logger.warning("capture_batch_single_position", key=key, batch_size=batch_size)
        return rows
    return rows[:cut]


def _get_ci(row: ChangedRow, column: str) -> Any:
    """按列名取值，精确匹配失败时忽略大小写"""
    if column in row:
        return row[column]
    lowered = column.lower()
    for name, value in row.items():
        if name.lower() == lowered:
            return value
    return None


def _check_identifier(name: str, what: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ConfigurationError(f"{what} 名称不合法: {name!r}")
    return name


# ============================================================================
# 捕获策略
# ============================================================================

class ChangeCaptureStrategy(ABC):
    """
    变更捕获策略基类

    子类只负责生成查询；执行、错误包装、结果后处理和水位线计算在基类完成。
    """

    kind: CaptureKind

    def __init__(self, settings: ResolvedTableSettings, detailed_logging: bool = True):
        """
        参数:
            settings: 表的生效设置
            detailed_logging: 是否在 DEBUG 日志中记录生成的 SQL
        """
        self.settings = settings
        self.detailed_logging = detailed_logging

    @property
    def fetch_limit(self) -> int:
        """读取行数上限：batch_size 加一行用于判断批次边界"""
        return self.settings.batch_size + 1

    async def capture(
        self,
        connection: DbConnection,
        task: SyncTask,
        table_mapping: TableMapping,
        watermark: str
    ) -> CapturedBatch:
        """
        捕获水位线之后的变更

        参数:
            connection: 源库连接
            task: 同步任务
            table_mapping: 表映射
            watermark: 当前水位线（空字符串表示首次同步）

        返回:
            CapturedBatch: 有序且不超过 batch_size 的变更行，以及新水位线

        异常:
            ConfigurationError: 表映射配置错误
            CaptureError: 查询失败
        """
        table = table_mapping.source_table
        table_mapping.primary_key_mapping()

        sql, params, max_rows = self.build_query(connection.dialect, table_mapping, watermark)
        if self.detailed_logging:
            logger.debug(
                "capture_query",
                task=task.task_name,
                table=table,
                strategy=self.kind.value,
                sql=sql,
            )

        try:
            rows = await connection.fetch_all(sql, params, max_rows=max_rows)
        except SyncError:
            raise
        except Exception as e:
            raise CaptureError(table, str(e)) from e

        rows = self.post_process(rows)
        rows = trim_boundary_ties(rows, self.order_key(), self.settings.batch_size)

        return CapturedBatch(
            rows=rows,
            next_watermark=compute_next_watermark(rows, self.settings.tracking_column),
        )

    @abstractmethod
    def build_query(
        self,
        dialect: DialectFacts,
        table_mapping: TableMapping,
        watermark: str
    ) -> Tuple[str, Dict[str, Any], Optional[int]]:
        """
        生成捕获查询

        返回:
            (SQL, 命名参数, 读取行数上限)
        """
        raise NotImplementedError

    def post_process(self, rows: List[ChangedRow]) -> List[ChangedRow]:
        """结果后处理"""
        return rows

    def order_key(self) -> str:
        """批次排序所依据的列"""
        return self.settings.tracking_column


class TrackingColumnCapture(ChangeCaptureStrategy):
    """
    跟踪列捕获（Timestamp / RowVersion）

    SELECT <映射列> FROM <源表> WHERE 1=1 [AND <跟踪列> > 水位线] ORDER BY <跟踪列> ASC
    """

    kind = CaptureKind.TRACKING_COLUMN

    def build_query(
        self,
        dialect: DialectFacts,
        table_mapping: TableMapping,
        watermark: str
    ) -> Tuple[str, Dict[str, Any], Optional[int]]:
        tracking_column = self.settings.tracking_column
        if not tracking_column:
            raise ConfigurationError(f"表 {table_mapping.source_table} 未配置跟踪列")

        columns = table_mapping.source_columns()
        if tracking_column.lower() not in (c.lower() for c in columns):
            # 需要跟踪列计算下一次水位线
            columns.append(tracking_column)

        rest = f"FROM {table_mapping.source_table} WHERE 1=1"
        params: Dict[str, Any] = {}
        if watermark:
            rest += f" AND {tracking_column} > {dialect.param(LAST_SYNC_VALUE_PARAM)}"
            params[LAST_SYNC_VALUE_PARAM] = self._watermark_parameter(watermark)
        rest += f" ORDER BY {tracking_column} ASC"

        sql = dialect.limited_select(", ".join(columns), rest, self.fetch_limit)
        return sql, params, None

    def _watermark_parameter(self, watermark: str) -> Any:
        """RowVersion 的 0x 十六进制水位线按二进制绑定"""
        if self.settings.sync_method == SyncMethod.ROW_VERSION and watermark[:2].lower() == "0x":
            try:
                return bytes.fromhex(watermark[2:])
            except ValueError:
                return watermark
        return watermark


class _CdcCapture(ChangeCaptureStrategy):
    """CDC 捕获公共逻辑"""

    def post_process(self, rows: List[ChangedRow]) -> List[ChangedRow]:
        return strip_cdc_columns(rows)

    def order_key(self) -> str:
        return START_LSN_COLUMN

    def _capture_instance(self) -> str:
        return _check_identifier(self.settings.capture_instance, "捕获实例")

    def _begin_lsn_parameter(self, watermark: str, table: str) -> Dict[str, Any]:
        return {LAST_SYNC_LSN_PARAM: decode_lsn(watermark, table)}


class CustomCdcCapture(_CdcCapture):
    """自定义 CDC 查询，水位线以 lastSyncValue 参数绑定"""

    kind = CaptureKind.CDC_CUSTOM

    def build_query(
        self,
        dialect: DialectFacts,
        table_mapping: TableMapping,
        watermark: str
    ) -> Tuple[str, Dict[str, Any], Optional[int]]:
        params: Dict[str, Any] = {}
        if watermark:
            params[LAST_SYNC_VALUE_PARAM] = watermark
        return self.settings.custom_query, params, self.fetch_limit


class LegacyCdcCapture(_CdcCapture):
    """
    基于 cdc.fn_cdc_get_all_changes_<实例> 函数的 CDC 查询

    起始 LSN: 无水位线时为捕获实例的最小 LSN，否则为水位线 LSN 的下一个 LSN。
    结束 LSN: 当前最大 LSN。
    """

    kind = CaptureKind.CDC_LEGACY

    def build_query(
        self,
        dialect: DialectFacts,
        table_mapping: TableMapping,
        watermark: str
    ) -> Tuple[str, Dict[str, Any], Optional[int]]:
        instance = self._capture_instance()
        columns = [START_LSN_COLUMN] + [c for c in table_mapping.source_columns() if c != START_LSN_COLUMN]

        params: Dict[str, Any] = {}
        lines = [
            "SET NOCOUNT ON;",
            "DECLARE @begin_lsn binary(10), @end_lsn binary(10);",
        ]
        if watermark:
            params = self._begin_lsn_parameter(watermark, table_mapping.source_table)
            lines.append(f"SET @begin_lsn = sys.fn_cdc_increment_lsn({dialect.param(LAST_SYNC_LSN_PARAM)});")
        else:
            lines.append(f"SET @begin_lsn = sys.fn_cdc_get_min_lsn('{instance}');")
        lines.append("SET @end_lsn = sys.fn_cdc_get_max_lsn();")
        lines.append("IF @begin_lsn IS NOT NULL AND @begin_lsn <= @end_lsn")
        lines.append(
            f"    SELECT TOP {self.fetch_limit} {', '.join(columns)}"
            f" FROM cdc.fn_cdc_get_all_changes_{instance}(@begin_lsn, @end_lsn, 'all')"
            f" ORDER BY {START_LSN_COLUMN} ASC, __$seqval ASC;"
        )
        return "\n".join(lines), params, None


class ModernCdcCapture(_CdcCapture):
    """
    基于 sys.sp_cdc_get_all_changes_<实例> 存储过程的 CDC 查询

    from_lsn 为 NULL 时返回完整历史；读取行数按 fetch_limit 截断。
    """

    kind = CaptureKind.CDC_MODERN

    def build_query(
        self,
        dialect: DialectFacts,
        table_mapping: TableMapping,
        watermark: str
    ) -> Tuple[str, Dict[str, Any], Optional[int]]:
        instance = self._capture_instance()

        params: Dict[str, Any] = {}
        lines = [
            "SET NOCOUNT ON;",
            "DECLARE @from_lsn binary(10), @to_lsn binary(10);",
        ]
        if watermark:
            params = self._begin_lsn_parameter(watermark, table_mapping.source_table)
            lines.append(f"SET @from_lsn = sys.fn_cdc_increment_lsn({dialect.param(LAST_SYNC_LSN_PARAM)});")
        else:
            lines.append("SET @from_lsn = NULL;")
        lines.append("SET @to_lsn = sys.fn_cdc_get_max_lsn();")
        lines.append(
            f"EXEC sys.sp_cdc_get_all_changes_{instance}"
            " @from_lsn = @from_lsn, @to_lsn = @to_lsn, @row_filter_option = 'all';"
        )
        return "\n".join(lines), params, self.fetch_limit


CAPTURE_STRATEGIES: Dict[CaptureKind, Type[ChangeCaptureStrategy]] = {
    CaptureKind.TRACKING_COLUMN: TrackingColumnCapture,
    CaptureKind.CDC_CUSTOM: CustomCdcCapture,
    CaptureKind.CDC_LEGACY: LegacyCdcCapture,
    CaptureKind.CDC_MODERN: ModernCdcCapture,
}


def select_capture_strategy(
    settings: ResolvedTableSettings,
    detailed_logging: bool = True
) -> ChangeCaptureStrategy:
    """根据生效设置选择捕获策略"""
    strategy_cls = CAPTURE_STRATEGIES[settings.capture_kind]
    return strategy_cls(settings, detailed_logging=detailed_logging)
