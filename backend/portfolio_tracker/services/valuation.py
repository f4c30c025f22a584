from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import hashlib
import logging
from typing import Callable, Iterable, Sequence

from portfolio_tracker.dates import utc_now, utc_today
from portfolio_tracker.services.cache import CacheStore, FailOpenCache, valuation_key
from portfolio_tracker.services.market_data import MarketDataClient, PriceFailure

logger = logging.getLogger(__name__)

HISTORICAL_VALUATION_TTL_SECONDS = 30 * 24 * 60 * 60
TODAY_VALUATION_TTL_SECONDS = 60 * 60


@dataclass(slots=True, frozen=True)
class Lot:
	id: int
	symbol: str
	quantity: float
	purchase_price: float
	purchase_date: date

	@property
	def cost_basis(self) -> float:
		return self.quantity * self.purchase_price


def symbols_of(lots: Iterable[Lot]) -> list[str]:
	return sorted({lot.symbol for lot in lots})


def holdings_digest(lots: Iterable[Lot]) -> str:
	"""Fingerprint of the positions so equal symbol sets with different sizes never collide."""
	canonical = "|".join(
		sorted(
			f"{lot.symbol}:{lot.quantity!r}:{lot.purchase_price!r}:{lot.purchase_date.isoformat()}"
			for lot in lots
		),
	)
	return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:12]


def purchased_recently(lot: Lot, target_date: date) -> bool:
	"""True when the lot was bought less than a day before `target_date` (or after it)."""
	return (target_date - lot.purchase_date).days < 1


class HistoricalValuationCalculator:
	def __init__(
		self,
		market_data: MarketDataClient,
		cache: CacheStore,
		now: Callable[[], datetime] = utc_now,
	) -> None:
		self.market_data = market_data
		self.cache = FailOpenCache(cache)
		self._now = now

	async def calculate(
		self,
		lots: Sequence[Lot],
		target_date: date,
		force_refresh: bool = False,
	) -> float:
		"""Total value of `lots` on `target_date`, read through the valuation cache.

		Past dates are served from cache even when `force_refresh` is set, since
		settled history cannot change; only today's value is recomputed, with
		its closes fetched again rather than read from the price cache. Any
		symbol that cannot be priced is valued at its purchase price instead of
		failing the whole valuation. Future dates are valued at cost and never
		cached.
		"""
		if not lots:
			return 0.0

		today = utc_today(self._now)
		if target_date > today:
			logger.info("Valuation date %s is in the future; using purchase prices.", target_date)
			return round(sum(lot.cost_basis for lot in lots), 2)

		is_today = target_date == today
		cache_key = valuation_key(target_date, symbols_of(lots), holdings_digest(lots))
		if not force_refresh or not is_today:
			cached_value = await self.cache.get(cache_key)
			if cached_value is not None:
				return float(cached_value)

		total_value = 0.0
		for lot in lots:
			total_value += lot.quantity * await self._resolve_price(
				lot,
				target_date,
				refresh_prices=force_refresh and is_today,
			)
		total_value = round(total_value, 2)

		ttl_seconds = TODAY_VALUATION_TTL_SECONDS if is_today else HISTORICAL_VALUATION_TTL_SECONDS
		await self.cache.set(cache_key, total_value, ttl_seconds)
		return total_value

	async def _resolve_price(self, lot: Lot, target_date: date, refresh_prices: bool = False) -> float:
		if purchased_recently(lot, target_date):
			logger.debug(
				"%s was purchased on %s; using recorded price for %s.",
				lot.symbol,
				lot.purchase_date,
				target_date,
			)
			return lot.purchase_price

		result = await self.market_data.get_historical_close(
			lot.symbol,
			target_date,
			refresh=refresh_prices,
		)
		if isinstance(result, PriceFailure):
			logger.warning(
				"No close for %s on %s (%s: %s); falling back to purchase price %.4f.",
				lot.symbol,
				target_date,
				result.reason.value,
				result.detail,
				lot.purchase_price,
			)
			return lot.purchase_price

		return result.price
