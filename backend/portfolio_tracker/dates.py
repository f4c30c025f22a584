from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

SATURDAY = 5
SUNDAY = 6


def utc_now() -> datetime:
	"""Return the current UTC timestamp."""
	return datetime.now(timezone.utc)


def coerce_utc_datetime(value: datetime) -> datetime:
	"""Treat naive timestamps as UTC so cached and fresh values compare safely."""
	if value.tzinfo is None:
		return value.replace(tzinfo=timezone.utc)

	return value.astimezone(timezone.utc)


def utc_today(now: Clock = utc_now) -> date:
	return coerce_utc_datetime(now()).date()


def shift_weekend_to_friday(day: date) -> date:
	weekday = day.weekday()
	if weekday == SATURDAY:
		return day - timedelta(days=1)
	if weekday == SUNDAY:
		return day - timedelta(days=2)
	return day


def build_interval_dates(today: date, lookback_days: int, interval_days: int = 7) -> list[date]:
	"""Today plus every `interval_days` step back within the window, ascending.

	Weekend steps move to the preceding Friday; today is kept as-is.
	"""
	if lookback_days < 0:
		raise ValueError("lookback_days cannot be negative.")

	dates = {today}
	for offset in range(interval_days, lookback_days + 1, interval_days):
		dates.add(shift_weekend_to_friday(today - timedelta(days=offset)))

	return sorted(dates)


def parse_iso_date(value: str) -> date:
	try:
		return date.fromisoformat(value.strip())
	except ValueError as exc:
		raise ValueError(f"Invalid date {value!r}; expected YYYY-MM-DD.") from exc
