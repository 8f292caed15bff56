from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite 读回的时间不带时区，统一按 UTC 处理
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_within_window(now: datetime, starts_at: Optional[datetime], ends_at: Optional[datetime]) -> bool:
    """判断当前时间是否在可选的起止时间窗口内"""
    if starts_at is not None and now < as_utc(starts_at):
        return False
    if ends_at is not None and now > as_utc(ends_at):
        return False
    return True
