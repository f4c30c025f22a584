from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Callable, Mapping, Sequence

from pydantic import ValidationError

from portfolio_tracker.dates import utc_now, utc_today
from portfolio_tracker.schemas import LatestPurchase, LeaderboardEntry, LeaderboardMetric
from portfolio_tracker.services.cache import CacheStore, FailOpenCache
from portfolio_tracker.services.market_data import MarketDataClient, PriceFailure
from portfolio_tracker.services.valuation import HistoricalValuationCalculator, Lot, symbols_of

logger = logging.getLogger(__name__)

LEADERBOARD_METRICS: tuple[LeaderboardMetric, ...] = ("total", "daily", "weekly", "worth")
LEADERBOARD_TTL_SECONDS = 5 * 60


def leaderboard_key(metric: str) -> str:
	return f"leaderboard:{metric}"


def _percentage(gain: float, base: float) -> float:
	if base <= 0:
		return 0.0
	return round((gain / base) * 100, 2)


def _ranking_value(entry: LeaderboardEntry, metric: LeaderboardMetric) -> float:
	if metric == "daily":
		return entry.daily_gain_percentage
	if metric == "weekly":
		return entry.weekly_gain_percentage
	if metric == "worth":
		return entry.current_worth
	return entry.total_gain_percentage


def rank_entries(
	entries: Sequence[LeaderboardEntry],
	metric: LeaderboardMetric,
) -> list[LeaderboardEntry]:
	ordered = sorted(entries, key=lambda entry: (-_ranking_value(entry, metric), entry.user_id))
	return [entry.model_copy(update={"rank": index}) for index, entry in enumerate(ordered, start=1)]


class LeaderboardAggregator:
	def __init__(
		self,
		calculator: HistoricalValuationCalculator,
		market_data: MarketDataClient,
		cache: CacheStore,
		now: Callable[[], datetime] = utc_now,
	) -> None:
		self.calculator = calculator
		self.market_data = market_data
		self.cache = FailOpenCache(cache)
		self._now = now

	async def build(
		self,
		users: Mapping[str, str | None],
		lots_by_user: Mapping[str, Sequence[Lot]],
		metric: LeaderboardMetric = "total",
		refresh: bool = False,
	) -> list[LeaderboardEntry]:
		"""Rank every user by `metric`, reusing the last ranking for a few minutes."""
		if metric not in LEADERBOARD_METRICS:
			raise ValueError(f"metric must be one of: {', '.join(LEADERBOARD_METRICS)}.")

		cache_key = leaderboard_key(metric)
		if not refresh:
			cached = await self.cache.get(cache_key)
			if cached is not None:
				try:
					return [LeaderboardEntry.model_validate(item) for item in cached]
				except ValidationError:
					logger.warning("Discarding unreadable cached leaderboard for %s.", metric)

		entries = await asyncio.gather(
			*(
				self.user_entry(user_id, avatar, lots_by_user.get(user_id, ()))
				for user_id, avatar in users.items()
			),
		)
		ranked = rank_entries(entries, metric)
		await self.cache.set(
			cache_key,
			[entry.model_dump(mode="json") for entry in ranked],
			LEADERBOARD_TTL_SECONDS,
		)
		return ranked

	async def user_entry(
		self,
		user_id: str,
		avatar: str | None,
		lots: Sequence[Lot],
	) -> LeaderboardEntry:
		if not lots:
			return LeaderboardEntry(
				user_id=user_id,
				avatar=avatar,
				starting_amount=0.0,
				current_worth=0.0,
				total_gain=0.0,
				total_gain_percentage=0.0,
				daily_gain=0.0,
				daily_gain_percentage=0.0,
				weekly_gain=0.0,
				weekly_gain_percentage=0.0,
			)

		current_prices = await self._current_prices(symbols_of(lots))
		starting_amount = sum(lot.cost_basis for lot in lots)
		current_worth = 0.0
		top_gainer: tuple[str, float] | None = None
		for lot in lots:
			price = current_prices.get(lot.symbol)
			if price is None:
				current_worth += lot.cost_basis
				continue

			current_worth += lot.quantity * price
			gain_percentage = ((price - lot.purchase_price) / lot.purchase_price) * 100
			if top_gainer is None or gain_percentage > top_gainer[1]:
				top_gainer = (lot.symbol, gain_percentage)

		today = utc_today(self._now)
		value_yesterday = await self.calculator.calculate(lots, today - timedelta(days=1))
		value_last_week = await self.calculator.calculate(lots, today - timedelta(days=7))

		total_gain = current_worth - starting_amount
		daily_gain = current_worth - value_yesterday
		weekly_gain = current_worth - value_last_week
		latest_lot = max(lots, key=lambda lot: (lot.purchase_date, lot.id))

		return LeaderboardEntry(
			user_id=user_id,
			avatar=avatar,
			starting_amount=round(starting_amount, 2),
			current_worth=round(current_worth, 2),
			total_gain=round(total_gain, 2),
			total_gain_percentage=_percentage(total_gain, starting_amount),
			daily_gain=round(daily_gain, 2),
			daily_gain_percentage=_percentage(daily_gain, value_yesterday),
			weekly_gain=round(weekly_gain, 2),
			weekly_gain_percentage=_percentage(weekly_gain, value_last_week),
			top_gainer=top_gainer[0] if top_gainer else None,
			top_gainer_percentage=round(top_gainer[1], 2) if top_gainer else None,
			latest_purchase=LatestPurchase(
				symbol=latest_lot.symbol,
				date=latest_lot.purchase_date,
				price=latest_lot.purchase_price,
			),
		)

	async def _current_prices(self, symbols: Sequence[str]) -> dict[str, float]:
		prices: dict[str, float] = {}
		for symbol in symbols:
			result = await self.market_data.get_current_price(symbol)
			if isinstance(result, PriceFailure):
				logger.warning(
					"No current price for %s (%s: %s); valuing at cost.",
					symbol,
					result.reason.value,
					result.detail,
				)
				continue
			prices[symbol] = result.price
		return prices
