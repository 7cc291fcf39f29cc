"""JSON 文件持久化

每个集合是一个整体替换的 JSON 文件: 每次修改都重写整个文件(读-改-写全部)，
写入先落到临时文件再 os.replace，读方(包括另一个前端进程)不会读到半个文件。
两个进程之间没有锁，一致性靠每次修改前重新读取(last-writer-wins)。
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from relaybot.logger import logger

__all__ = ["StorageError", "JsonCollection"]


class StorageError(Exception):
    """持久化读写失败。对触发它的操作是致命的，调用方不得向用户报告成功"""


class JsonCollection:
    """一个命名的、可整体加载与整体保存的 JSON 文档"""

    def __init__(self, path: str | os.PathLike, default: Any = None) -> None:
        self.path = Path(path)
        self._default = [] if default is None else default

    @property
    def name(self) -> str:
        return self.path.stem

    def _empty(self) -> Any:
        return json.loads(json.dumps(self._default))

    def load(self) -> Any:
        """读取整个文档。文件不存在或为空时返回默认值，损坏时备份后返回默认值"""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self._empty()
        except OSError as e:
            logger.error(f"读取 {self.path} 失败: {e}")
            raise StorageError(f"无法读取 {self.path}: {e}") from e

        if raw.strip() == "":
            return self._empty()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"{self.path} 中的 JSON 已损坏: {e}")
            self._backup_corrupted()
            return self._empty()

        if not isinstance(data, type(self._default)):
            logger.error(f"{self.path} 的顶层类型不符: 期望 {type(self._default).__name__}, 实际 {type(data).__name__}")
            self._backup_corrupted()
            return self._empty()
        return data

    def save(self, data: Any) -> None:
        """原子地整体替换文件内容，失败时抛出 StorageError"""
        tmp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"写入 {self.path} 失败: {e}")
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise StorageError(f"无法写入 {self.path}: {e}") from e
        logger.trace(f"已写入 {self.path}")

    def _backup_corrupted(self) -> None:
        backup_path = self.path.with_name(f"{self.path.name}.bak")
        try:
            os.replace(self.path, backup_path)
            logger.warning(f"已将损坏的 {self.path} 备份到 {backup_path}")
        except OSError as e:
            logger.error(f"备份损坏文件 {self.path} 失败: {e}")
