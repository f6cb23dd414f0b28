from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from .errors import InvalidIdentifierError

_VIN_RE = re.compile(r"^[A-Z0-9]{17}$")

MAX_POSITION = 99


def normalize_vin(value: Any) -> str:
    """校验并归一化 VIN：去空白、转大写，必须是 17 位字母数字。"""
    vin = str(value or "").strip().upper()
    if not _VIN_RE.match(vin):
        raise InvalidIdentifierError(f"{value} is not a valid VIN.")
    return vin


def normalize_position(value: Any) -> int:
    """位置编号：1..99 的正整数（兼容 "01" 这类两位写法）。"""
    if isinstance(value, bool):
        raise InvalidIdentifierError(f"{value} is not a valid position.")
    try:
        position = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidIdentifierError(f"{value} is not a valid position.") from None
    if position <= 0 or position > MAX_POSITION:
        raise InvalidIdentifierError(f"{value} is not a valid position.")
    return position


def normalize_shrink(value: Any) -> int | None:
    """缩放宽度（像素）；None / 空串表示原图。"""
    if value is None or str(value).strip() == "":
        return None
    try:
        width = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidIdentifierError(f"{value} is not a valid shrink width.") from None
    if width <= 0 or width > 10_000:
        raise InvalidIdentifierError(f"{value} is not a valid shrink width.")
    return width


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime | None) -> datetime | None:
    # SQLite 会丢失 tzinfo；读出来的 naive datetime 一律按 UTC 处理
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def latest_of(*values: datetime | None) -> datetime | None:
    stamps = [to_utc(v) for v in values if v is not None]
    return max(stamps) if stamps else None


MAX_WINDOW_SECONDS = 10 * 366 * 24 * 3600


def normalize_window_seconds(value: Any) -> int:
    """“最近 N 秒变更”的窗口：非负整数秒。"""
    if isinstance(value, bool):
        raise InvalidIdentifierError(f"{value} is not a valid number of seconds.")
    try:
        seconds = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidIdentifierError(f"{value} is not a valid number of seconds.") from None
    if seconds < 0 or seconds > MAX_WINDOW_SECONDS:
        raise InvalidIdentifierError(f"{value} is not a valid number of seconds.")
    return seconds
