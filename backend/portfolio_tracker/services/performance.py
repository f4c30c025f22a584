from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
import logging
from typing import Callable, Sequence

from pydantic import ValidationError

from portfolio_tracker.dates import build_interval_dates, coerce_utc_datetime, utc_now
from portfolio_tracker.schemas import PerformanceSeries, ValuationPoint
from portfolio_tracker.services.cache import (
	CacheStore,
	FailOpenCache,
	series_generated_at_key,
	series_key,
)
from portfolio_tracker.services.valuation import HistoricalValuationCalculator, Lot

logger = logging.getLogger(__name__)

INTERVAL_DAYS = 7
STALE_AFTER = timedelta(hours=6)
SERIES_TTL_SECONDS = 12 * 60 * 60
FORCED_SERIES_TTL_SECONDS = 60 * 60
EMPTY_SERIES_TTL_SECONDS = 10 * 60
GENERATED_AT_TTL_SECONDS = 30 * 24 * 60 * 60


class SeriesMode(str, Enum):
	FORCED_FULL = "forced_full"
	STALE_REBUILD = "stale_rebuild"
	PARTIAL_REFRESH = "partial_refresh"
	CACHE_HIT = "cache_hit"


class PerformanceSeriesBuilder:
	def __init__(
		self,
		calculator: HistoricalValuationCalculator,
		cache: CacheStore,
		now: Callable[[], datetime] = utc_now,
	) -> None:
		self.calculator = calculator
		self.cache = FailOpenCache(cache)
		self._now = now
		self.last_mode: SeriesMode | None = None

	async def build(
		self,
		user_id: str,
		lots: Sequence[Lot],
		lookback_days: int,
		refresh: bool = False,
		force: bool = False,
	) -> PerformanceSeries:
		if lookback_days < 0:
			raise ValueError("lookback_days cannot be negative.")

		now = coerce_utc_datetime(self._now())
		if force:
			self.last_mode = SeriesMode.FORCED_FULL
			logger.info("Force-refreshing %s-day performance for %s.", lookback_days, user_id)
			return await self._rebuild(
				user_id,
				lots,
				lookback_days,
				now,
				force_refresh=True,
				ttl_seconds=FORCED_SERIES_TTL_SECONDS,
			)

		cached_series = await self._load_cached(user_id, lookback_days)
		if (
			cached_series is None
			or now - cached_series.generated_at > STALE_AFTER
			or cached_series.generated_at.date() != now.date()
		):
			# A series from an earlier UTC day no longer ends on today.
			self.last_mode = SeriesMode.STALE_REBUILD
			return await self._rebuild(
				user_id,
				lots,
				lookback_days,
				now,
				force_refresh=refresh,
				ttl_seconds=SERIES_TTL_SECONDS,
			)

		if refresh:
			self.last_mode = SeriesMode.PARTIAL_REFRESH
			return await self._refresh_today(cached_series, lots, now)

		self.last_mode = SeriesMode.CACHE_HIT
		return cached_series

	async def _load_cached(self, user_id: str, lookback_days: int) -> PerformanceSeries | None:
		payload = await self.cache.get(series_key(user_id, lookback_days))
		generated_at = await self.cache.get(series_generated_at_key(user_id, lookback_days))
		if payload is None or generated_at is None:
			return None

		try:
			series = PerformanceSeries.model_validate(payload)
			series.generated_at = coerce_utc_datetime(datetime.fromisoformat(generated_at))
		except (ValidationError, TypeError, ValueError):
			logger.warning("Discarding unreadable cached series for %s/%s.", user_id, lookback_days)
			return None

		return series

	async def _store(self, series: PerformanceSeries, ttl_seconds: int, stamp: bool) -> None:
		await self.cache.set(
			series_key(series.user_id, series.lookback_days),
			series.model_dump(mode="json"),
			ttl_seconds,
		)
		if stamp:
			await self.cache.set(
				series_generated_at_key(series.user_id, series.lookback_days),
				series.generated_at.isoformat(),
				GENERATED_AT_TTL_SECONDS,
			)

	async def _rebuild(
		self,
		user_id: str,
		lots: Sequence[Lot],
		lookback_days: int,
		now: datetime,
		force_refresh: bool,
		ttl_seconds: int,
	) -> PerformanceSeries:
		if not lots:
			series = PerformanceSeries(
				user_id=user_id,
				lookback_days=lookback_days,
				performance=[],
				generated_at=now,
			)
			await self._store(series, EMPTY_SERIES_TTL_SECONDS, stamp=True)
			return series

		points: list[ValuationPoint] = []
		for day in build_interval_dates(now.date(), lookback_days, INTERVAL_DAYS):
			value = await self.calculator.calculate(lots, day, force_refresh=force_refresh)
			points.append(ValuationPoint(date=day, value=value))

		series = PerformanceSeries(
			user_id=user_id,
			lookback_days=lookback_days,
			performance=points,
			generated_at=now,
		)
		logger.info(
			"Built %s points for %s from %s to %s.",
			len(points),
			user_id,
			points[0].date,
			points[-1].date,
		)
		await self._store(series, ttl_seconds, stamp=True)
		return series

	async def _refresh_today(
		self,
		cached_series: PerformanceSeries,
		lots: Sequence[Lot],
		now: datetime,
	) -> PerformanceSeries:
		if not lots:
			return await self._rebuild(
				cached_series.user_id,
				lots,
				cached_series.lookback_days,
				now,
				force_refresh=True,
				ttl_seconds=SERIES_TTL_SECONDS,
			)

		today = now.date()
		value = await self.calculator.calculate(lots, today, force_refresh=True)
		points = [point for point in cached_series.performance if point.date < today]
		points.append(ValuationPoint(date=today, value=value))

		series = cached_series.model_copy(update={"performance": points})
		# generatedAt is left alone so the six-hour staleness clock keeps running.
		await self._store(series, SERIES_TTL_SECONDS, stamp=False)
		return series
