from __future__ import annotations

from datetime import date, datetime
import logging
from typing import Callable, Iterable, Protocol, Sequence

from portfolio_tracker.dates import utc_now, utc_today
from portfolio_tracker.schemas import (
	LeaderboardEntry,
	LeaderboardMetric,
	PerformanceSeries,
	ValuationResult,
)
from portfolio_tracker.security import normalize_user_id
from portfolio_tracker.services.cache import (
	CacheStore,
	FailOpenCache,
	user_series_pattern,
	valuation_pattern,
)
from portfolio_tracker.services.leaderboard import LeaderboardAggregator
from portfolio_tracker.services.market_data import MarketDataClient
from portfolio_tracker.services.performance import PerformanceSeriesBuilder
from portfolio_tracker.services.valuation import HistoricalValuationCalculator, Lot, symbols_of

logger = logging.getLogger(__name__)


class LotSource(Protocol):
	async def list_lots(self, user_id: str) -> list[Lot]: ...

	async def list_users(self) -> dict[str, str | None]: ...


class PortfolioEngine:
	"""Entry points used by the HTTP layer and the scheduled refresh job."""

	def __init__(
		self,
		lot_source: LotSource,
		market_data: MarketDataClient,
		cache: CacheStore,
		now: Callable[[], datetime] = utc_now,
	) -> None:
		self.lot_source = lot_source
		self.market_data = market_data
		self.cache = FailOpenCache(cache)
		self._now = now
		self.calculator = HistoricalValuationCalculator(market_data, cache, now=now)
		self.series_builder = PerformanceSeriesBuilder(self.calculator, cache, now=now)
		self.leaderboard = LeaderboardAggregator(self.calculator, market_data, cache, now=now)

	async def get_portfolio_value(
		self,
		user_id: str,
		as_of: date | None = None,
		force_refresh: bool = False,
	) -> ValuationResult:
		normalized_user_id = normalize_user_id(user_id)
		target_date = as_of or utc_today(self._now)
		lots = await self.lot_source.list_lots(normalized_user_id)
		total_value = await self.calculator.calculate(lots, target_date, force_refresh=force_refresh)
		return ValuationResult(user_id=normalized_user_id, date=target_date, total_value=total_value)

	async def get_performance_series(
		self,
		user_id: str,
		lookback_days: int = 30,
		refresh: bool = False,
		force: bool = False,
	) -> PerformanceSeries:
		normalized_user_id = normalize_user_id(user_id)
		lots = await self.lot_source.list_lots(normalized_user_id)
		return await self.series_builder.build(
			normalized_user_id,
			lots,
			lookback_days,
			refresh=refresh,
			force=force,
		)

	async def get_leaderboard(
		self,
		metric: LeaderboardMetric = "total",
		refresh: bool = False,
	) -> list[LeaderboardEntry]:
		users = await self.lot_source.list_users()
		lots_by_user = {user_id: await self.lot_source.list_lots(user_id) for user_id in users}
		return await self.leaderboard.build(users, lots_by_user, metric=metric, refresh=refresh)

	async def invalidate_user_caches(
		self,
		user_id: str,
		previous_lots: Iterable[Lot] = (),
	) -> int:
		"""Drop every cached series for the user plus valuations of their symbol sets.

		Call after a lot is added, edited or deleted; pass the lots as they were
		before the change so entries for the old symbol set go too.
		"""
		normalized_user_id = normalize_user_id(user_id)
		deleted = await self.cache.delete_matching(user_series_pattern(normalized_user_id))

		symbol_sets = {tuple(symbols_of(previous_lots))}
		symbol_sets.add(tuple(symbols_of(await self.lot_source.list_lots(normalized_user_id))))
		for symbols in symbol_sets:
			if symbols:
				deleted += await self.cache.delete_matching(valuation_pattern(symbols))

		deleted += await self.cache.delete_matching("leaderboard:*")
		logger.info("Cleared %s cache entries for %s.", deleted, normalized_user_id)
		return deleted

	async def invalidate_all_series(self) -> int:
		"""Drop all cached series and today's valuations so every chart recomputes."""
		today = utc_today(self._now)
		deleted = await self.cache.delete_matching("perfseries:*")
		deleted += await self.cache.delete_matching(f"valuation:{today.isoformat()}:*")
		deleted += await self.cache.delete_matching("leaderboard:*")
		logger.info("Cleared %s cache entries across all users.", deleted)
		return deleted

	async def warm_user(self, user_id: str, lookback_days: Sequence[int] = (30,)) -> None:
		for days in lookback_days:
			await self.get_performance_series(user_id, days, refresh=True)

	async def close(self) -> None:
		await self.cache.store.close()
