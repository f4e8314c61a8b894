"""
捕获批次模型 - 一次变更捕获的结果
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# 列名 -> 值；缺少键表示未选择该列，None 表示 SQL NULL
ChangedRow = Dict[str, Any]


class CapturedBatch(BaseModel):
    """
    一次捕获得到的变更批次

    属性:
        rows: 按跟踪列或 LSN 升序排列的变更行
        next_watermark: 根据最后一行计算的新水位线，None 表示不推进
    """
    rows: List[ChangedRow] = Field(default_factory=list, description="变更行")
    next_watermark: Optional[str] = Field(default=None, description="新水位线")

    def __len__(self) -> int:
        """返回行数"""
        return len(self.rows)

    def is_empty(self) -> bool:
        """检查是否为空批次"""
        return len(self.rows) == 0
