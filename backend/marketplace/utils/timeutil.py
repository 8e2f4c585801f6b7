"""
时间工具

库内统一使用 naive UTC 时间入库、比较。
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """当前 UTC 时间（不带 tzinfo）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600
