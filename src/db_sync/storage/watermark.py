"""
水位持久化存储

水位以 "<任务名>:<源表名>" 为键保存，空字符串表示尚未同步过。
提供两种实现:
- FileWatermarkStore: 纯文本 key=value 文件，兼容旧版 sync_state.txt
- SqliteWatermarkStore: 本地 SQLite 表，比较并设置为原子操作
"""

import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Union

from db_sync.exceptions import ConfigurationError
from db_sync.models.sync_config import GlobalSettings
from db_sync.utils.logging import get_logger

logger = get_logger(__name__)


def watermark_key(task_name: str, table_name: str) -> str:
    """生成水位键"""
    return f"{task_name}:{table_name}"


class WatermarkStore(ABC):
    """水位存储接口"""

    @abstractmethod
    def get(self, task_name: str, table_name: str) -> str:
        """读取水位，不存在返回空字符串"""

    @abstractmethod
    def set(self, task_name: str, table_name: str, token: str) -> None:
        """写入水位，存在则覆盖"""

    @abstractmethod
    def compare_and_set(self, task_name: str, table_name: str, expected: str, token: str) -> bool:
        """
        当前水位等于 expected 时写入 token

        返回:
            是否写入成功
        """

    @abstractmethod
    def delete(self, task_name: str, table_name: str) -> bool:
        """删除水位，返回是否存在过"""

    @abstractmethod
    def items(self) -> Dict[str, str]:
        """返回全部 {键: 水位}"""

    def close(self) -> None:
        """释放资源"""


class FileWatermarkStore(WatermarkStore):
    """
    文本文件水位存储

    每行一条 "<任务>:<表>=<水位>"，按行线性查找。
    写入先落到同目录临时文件再 os.replace，读者不会看到写了一半的文件。
    """

    def __init__(self, path: Union[str, Path] = "sync_state.txt"):
        """
        参数:
            path: 水位文件路径，不存在时自动创建
        """
        self.path = Path(path)
        self._lock = threading.Lock()
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch()
            logger.info("watermark_file_created", path=str(self.path))

    def _read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        return self.path.read_text(encoding="utf-8").splitlines()

    def _write_lines(self, lines: List[str]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=f".{self.path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for line in lines:
                    f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _file_key(task_name: str, table_name: str) -> str:
        """
        生成文件中的键

        异常:
            ConfigurationError: 键含有 '=' 或换行，按行存储后无法原样读回
        """
        key = watermark_key(task_name, table_name)
        if "=" in key or "\n" in key or "\r" in key:
            raise ConfigurationError(f"水位键 {key!r} 不能包含 '=' 或换行符")
        return key

    @staticmethod
    def _find(lines: List[str], key: str) -> int:
        prefix = key + "="
        for index, line in enumerate(lines):
            if line.startswith(prefix):
                return index
        return -1

    def _get_unlocked(self, key: str) -> str:
        lines = self._read_lines()
        index = self._find(lines, key)
        if index < 0:
            return ""
        return lines[index][len(key) + 1:]

    def _set_unlocked(self, key: str, token: str) -> None:
        if "\n" in token or "\r" in token:
            raise ValueError("水位不能包含换行符")
        lines = self._read_lines()
        index = self._find(lines, key)
        if index >= 0:
            lines[index] = f"{key}={token}"
        else:
            lines.append(f"{key}={token}")
        self._write_lines(lines)

    def get(self, task_name: str, table_name: str) -> str:
        with self._lock:
            return self._get_unlocked(self._file_key(task_name, table_name))

    def set(self, task_name: str, table_name: str, token: str) -> None:
        with self._lock:
            self._set_unlocked(self._file_key(task_name, table_name), token)

    def compare_and_set(self, task_name: str, table_name: str, expected: str, token: str) -> bool:
        key = self._file_key(task_name, table_name)
        with self._lock:
            current = self._get_unlocked(key)
            if current != expected:
                logger.warning("watermark_conflict", key=key, expected=expected, current=current)
                return False
            self._set_unlocked(key, token)
            return True

    def delete(self, task_name: str, table_name: str) -> bool:
        key = self._file_key(task_name, table_name)
        with self._lock:
            lines = self._read_lines()
            index = self._find(lines, key)
            if index < 0:
                return False
            del lines[index]
            self._write_lines(lines)
            return True

    def items(self) -> Dict[str, str]:
        with self._lock:
            lines = self._read_lines()
        result: Dict[str, str] = {}
        for line in lines:
            if "=" not in line:
                continue
            key, token = line.split("=", 1)
            # 与按行查找一致，重复键以第一条为准
            result.setdefault(key, token)
        return result


class SqliteWatermarkStore(WatermarkStore):
    """
    SQLite 水位存储

    每次操作打开新连接；比较并设置在单条 UPDATE/INSERT 中完成，
    多个进程或并发表同步共用同一文件时也不会丢失更新。
    """

    def __init__(self, db_path: Union[str, Path] = "sync_state.db"):
        """
        参数:
            db_path: 存储数据库路径
        """
        self.db_path = Path(db_path)
        self._ensure_tables()

    def _get_connection(self) -> sqlite3.Connection:
        """获取数据库连接"""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_tables(self) -> None:
        """
        确保表结构存在

        异常:
            ConfigurationError: 路径上已有文件但不是 SQLite 数据库（如旧版文本水位文件）
        """
        conn = self._get_connection()
        try:
            with conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS watermarks (
                        task_name TEXT NOT NULL,
                        table_name TEXT NOT NULL,
                        token TEXT NOT NULL,
                        updated_at TIMESTAMP,
                        PRIMARY KEY (task_name, table_name)
                    )
                """)
        except sqlite3.OperationalError:
            raise
        except sqlite3.DatabaseError as e:
            raise ConfigurationError(
                f"水位线存储 {self.db_path} 不是 SQLite 数据库: {e}"
            ) from e
        finally:
            conn.close()

    def get(self, task_name: str, table_name: str) -> str:
        conn = self._get_connection()
        try:
            row = conn.execute("""
                SELECT token FROM watermarks
                WHERE task_name = ? AND table_name = ?
            """, (task_name, table_name)).fetchone()
            return row["token"] if row else ""
        finally:
            conn.close()

    def set(self, task_name: str, table_name: str, token: str) -> None:
        conn = self._get_connection()
        try:
            with conn:
                conn.execute("""
                    INSERT INTO watermarks (task_name, table_name, token, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(task_name, table_name)
                    DO UPDATE SET token = excluded.token, updated_at = excluded.updated_at
                """, (task_name, table_name, token, datetime.now(timezone.utc).isoformat()))
        finally:
            conn.close()

    def compare_and_set(self, task_name: str, table_name: str, expected: str, token: str) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        conn = self._get_connection()
        try:
            with conn:
                if expected == "":
                    # 空水位既可能是没有记录，也可能是存了空串
                    cursor = conn.execute("""
                        INSERT OR IGNORE INTO watermarks (task_name, table_name, token, updated_at)
                        VALUES (?, ?, ?, ?)
                    """, (task_name, table_name, token, now))
                    if cursor.rowcount == 1:
                        return True
                cursor = conn.execute("""
                    UPDATE watermarks
                    SET token = ?, updated_at = ?
                    WHERE task_name = ? AND table_name = ? AND token = ?
                """, (token, now, task_name, table_name, expected))
                updated = cursor.rowcount == 1
        finally:
            conn.close()

        if not updated:
            logger.warning(
                "watermark_conflict",
                key=watermark_key(task_name, table_name),
                expected=expected,
            )
        return updated

    def delete(self, task_name: str, table_name: str) -> bool:
        conn = self._get_connection()
        try:
            with conn:
                cursor = conn.execute("""
                    DELETE FROM watermarks
                    WHERE task_name = ? AND table_name = ?
                """, (task_name, table_name))
                return cursor.rowcount > 0
        finally:
            conn.close()

    def items(self) -> Dict[str, str]:
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT task_name, table_name, token FROM watermarks
                ORDER BY task_name, table_name
            """).fetchall()
            return {watermark_key(row["task_name"], row["table_name"]): row["token"] for row in rows}
        finally:
            conn.close()


def open_watermark_store(settings: GlobalSettings) -> WatermarkStore:
    """
    根据全局设置创建水位存储

    异常:
        ConfigurationError: 未知的存储类型
    """
    kind = settings.watermark_store
    if kind == "file":
        return FileWatermarkStore(settings.resolved_watermark_path())
    if kind == "sqlite":
        return SqliteWatermarkStore(settings.resolved_watermark_path())
    raise ConfigurationError(f"不支持的水位存储类型: {kind}")
