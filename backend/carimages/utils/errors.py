from __future__ import annotations

import re
from typing import Any


_CONTROL_RE = re.compile(r"[\r\n\t]+")


class CarImagesError(Exception):
    """Base exception for all carimages errors."""


class NotFoundError(CarImagesError):
    """VIN / 位置在所有层都不存在（对外表现为空结果，而不是错误）。"""


class InvalidIdentifierError(CarImagesError, ValueError):
    """VIN / 位置 / 品牌格式非法；在访问任何存储之前就拒绝。"""


class AlreadyExistsError(CarImagesError):
    """创建链接时目标 VIN 已存在记录。"""

    def __init__(self, vin: str) -> None:
        self.vin = vin
        super().__init__(f"VIN {vin} already exists in database.")


class OriginalProtectedError(CarImagesError):
    """尝试用“删除链接”删除一条持有原图的记录。"""

    def __init__(self, vin: str) -> None:
        self.vin = vin
        super().__init__(f"{vin} contains original pictures and cannot be deleted.")


class BrokenLinkError(CarImagesError):
    """链接记录找不到可解析的原始记录。"""

    def __init__(self, vin: str, position: int | None = None) -> None:
        self.vin = vin
        self.position = position
        where = f" position={position}" if position is not None else ""
        super().__init__(f"linked record {vin} has no resolvable origin{where}")


class UpstreamUnavailableError(CarImagesError):
    """某一层超时或报错；由调用方降级到下一层，不直接暴露给请求方。"""

    def __init__(self, tier: str, message: str = "") -> None:
        self.tier = tier
        super().__init__(f"{tier} unavailable" + (f": {message}" if message else ""))


class MigrationFailure(CarImagesError):
    """单条记录迁移失败；只计数，不中断整批。"""

    def __init__(self, vin: str, reason: str) -> None:
        self.vin = vin
        self.reason = reason
        super().__init__(f"migration of {vin} failed: {reason}")


def _sanitize_text(text: str, *, max_len: int) -> str:
    """把异常文本压缩成更适合日志/落盘的短字符串（避免换行、控制字符、超长）。"""
    if max_len <= 0:
        return ""
    cleaned = _CONTROL_RE.sub(" ", text).strip()
    if len(cleaned) > max_len:
        return f"{cleaned[:max_len]}…"
    return cleaned


def exception_summary(exc: BaseException, *, max_len: int = 200) -> str:
    """生成对外更安全的异常摘要：默认仅保留异常类型 + 截断后的消息。"""
    name = type(exc).__name__
    msg = _sanitize_text(str(exc), max_len=max_len)
    return f"{name}: {msg}" if msg else name


def safe_str(value: Any, *, max_len: int = 200) -> str:
    """把任意值转换为适合对外/日志展示的短文本。"""
    return _sanitize_text(str(value), max_len=max_len)
