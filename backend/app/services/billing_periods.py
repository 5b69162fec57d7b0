"""請求期間計算 (純粋関数のみ)"""
import calendar
from datetime import datetime, timedelta, timezone

BILLING_PERIOD_UNITS = ("daily", "weekly", "monthly", "annual")

_APPROX_DAYS = {"daily": 1, "weekly": 7, "monthly": 30, "annual": 365}
_UNIT_LABELS = {"daily": "day", "weekly": "week", "monthly": "month", "annual": "year"}


def utcnow() -> datetime:
    """DB保存形式 (naive UTC) の現在時刻"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _add_months(start: datetime, months: int) -> datetime:
    """月加算。日は移動先の月末でクランプ (1/31 + 1ヶ月 = 2/28 or 2/29)"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_period_end(start: datetime, billing_period: str, billing_period_count: int = 1) -> datetime:
    """開始時刻に billing_period × count を加算した期間終了時刻"""
    if billing_period_count < 1:
        raise ValueError(f"billing_period_count must be >= 1: {billing_period_count}")

    if billing_period == "daily":
        return start + timedelta(days=billing_period_count)
    if billing_period == "weekly":
        return start + timedelta(weeks=billing_period_count)
    if billing_period == "monthly":
        return _add_months(start, billing_period_count)
    if billing_period == "annual":
        return _add_months(start, 12 * billing_period_count)
    raise ValueError(f"Unknown billing period: {billing_period}")


def calculate_next_billing_date(start: datetime, billing_period: str, billing_period_count: int = 1) -> datetime:
    """次回請求日 (期間終了と同一)"""
    return calculate_period_end(start, billing_period, billing_period_count)


def renewal_anchor(current_period_end: datetime | None, now: datetime) -> datetime:
    """延長の起点: 既存期間終了と現在時刻の遅い方 (期間の圧縮・重複を防ぐ)"""
    if current_period_end is None:
        return now
    return max(current_period_end, now)


def is_period_expired(period_end: datetime, now: datetime | None = None) -> bool:
    return (now or utcnow()) >= period_end


def get_period_duration_days(billing_period: str, billing_period_count: int = 1) -> int:
    """表示用のおおよその日数"""
    return _APPROX_DAYS.get(billing_period, 30) * billing_period_count


def get_period_label(billing_period: str, billing_period_count: int = 1) -> str:
    if billing_period == "monthly" and billing_period_count == 3:
        return "per quarter"
    unit = _UNIT_LABELS.get(billing_period)
    if unit is None:
        return "per period"
    if billing_period_count > 1:
        return f"per {billing_period_count} {unit}s"
    return f"per {unit}"


def get_daily_average_quota(total_quota: int, billing_period: str, billing_period_count: int = 1) -> int:
    days = get_period_duration_days(billing_period, billing_period_count)
    return total_quota // days
