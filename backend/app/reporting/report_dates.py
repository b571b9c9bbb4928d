from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional
from zoneinfo import ZoneInfo

from ..config import settings
from ..logs import json_log
from ..store.base import DocumentStore


@dataclass(frozen=True)
class ReportDate:
    key: str  # YYYY-MM-DD business date
    day_start: datetime  # cutoff instant that opened the business day
    report_date: datetime  # 00:00 UTC of the business date


def store_tz(tz=None) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    return ZoneInfo(tz or settings.store_timezone)


def _cutoff_value(raw, upper: int) -> Optional[int]:
    if raw is None:
        return 0
    if isinstance(raw, bool):
        return None
    try:
        v = Decimal(str(raw).strip())
    except InvalidOperation:
        return None
    if v != v.to_integral_value() or not (0 <= v <= upper):
        return None
    return int(v)


def load_cutoff(store: DocumentStore, store_id: str) -> tuple[int, int]:
    """Store's report cutoff (hour, minute); 00:00 when unset, invalid or unreadable."""
    try:
        snap = store.get("store_settings", store_id)
    except Exception as ex:
        json_log("warning", "report_date.settings_unavailable", store_id=store_id, error=str(ex))
        return 0, 0
    if not snap.exists:
        return 0, 0
    hour = _cutoff_value(snap.get("reportCutoffHour"), 23)
    minute = _cutoff_value(snap.get("reportCutoffMinute"), 59)
    if hour is None or minute is None:
        json_log(
            "warning",
            "report_date.invalid_cutoff",
            store_id=store_id,
            hour=snap.get("reportCutoffHour"),
            minute=snap.get("reportCutoffMinute"),
        )
        return 0, 0
    return hour, minute


def business_date_for(event_time: datetime, cutoff_hour: int, cutoff_minute: int, tz=None) -> ReportDate:
    zone = store_tz(tz)
    if event_time.tzinfo is None:
        event_time = event_time.replace(tzinfo=timezone.utc)
    local = event_time.astimezone(zone)
    cutoff_today = datetime.combine(local.date(), time(cutoff_hour, cutoff_minute), tzinfo=zone)

    if local < cutoff_today:
        business_day: date = local.date() - timedelta(days=1)
        day_start = cutoff_today - timedelta(days=1)
    else:
        business_day = local.date()
        day_start = cutoff_today

    return ReportDate(
        key=business_day.isoformat(),
        day_start=day_start.astimezone(timezone.utc),
        report_date=datetime(business_day.year, business_day.month, business_day.day, tzinfo=timezone.utc),
    )


def resolve_report_date(store: DocumentStore, store_id: str, event_time: datetime, tz=None) -> ReportDate:
    hour, minute = load_cutoff(store, store_id)
    return business_date_for(event_time, hour, minute, tz)
