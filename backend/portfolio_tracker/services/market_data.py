from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
import logging
import re
from typing import Any, Callable, Iterable, Union

import httpx

from portfolio_tracker.dates import utc_now, utc_today
from portfolio_tracker.errors import PriceLookupError, PriceNotFound, PriceProviderUnavailable
from portfolio_tracker.services.cache import (
	CacheStore,
	FailOpenCache,
	current_price_key,
	historical_price_key,
)

logger = logging.getLogger(__name__)

CRYPTO_PREFIX = "@"
HISTORY_LOOKBACK_DAYS = 7
CURRENT_PRICE_TTL_SECONDS = 5 * 60
HISTORICAL_PRICE_TTL_SECONDS = 30 * 24 * 60 * 60

# Raised while walking a response body that does not have the expected shape.
MALFORMED_PAYLOAD_ERRORS = (
	AttributeError,
	IndexError,
	KeyError,
	OSError,
	OverflowError,
	TypeError,
	ValueError,
)

INVALID_SYMBOL_MESSAGE = (
	"Invalid symbol format. Use a stock ticker (AAPL, BRK-B, 0700.HK, ^GSPC) "
	"or an @-prefixed crypto symbol (@BTC)."
)

COINGECKO_IDS = {
	"BTC": "bitcoin",
	"ETH": "ethereum",
	"SOL": "solana",
	"DOGE": "dogecoin",
	"ADA": "cardano",
	"DOT": "polkadot",
	"XRP": "ripple",
	"LTC": "litecoin",
	"AVAX": "avalanche-2",
	"LINK": "chainlink",
	"MATIC": "matic-network",
	"UNI": "uniswap",
	"SHIB": "shiba-inu",
	"ATOM": "cosmos",
	"XLM": "stellar",
	"ALGO": "algorand",
	"BNB": "binancecoin",
}


def is_crypto_symbol(symbol: str) -> bool:
	return symbol.startswith(CRYPTO_PREFIX)


def normalize_symbol(symbol: str) -> str:
	"""Upper-case tickers, keeping the @ prefix that marks crypto assets."""
	candidate = symbol.strip().upper()
	if not candidate:
		raise ValueError("Symbol cannot be empty.")

	if is_crypto_symbol(candidate):
		if re.fullmatch(r"^@[A-Z0-9][A-Z0-9-]*$", candidate):
			return candidate
		raise ValueError(INVALID_SYMBOL_MESSAGE)

	if re.fullmatch(r"^\^?[A-Z0-9][A-Z0-9]*(?:[.=-][A-Z0-9]+)*$", candidate):
		return candidate

	raise ValueError(INVALID_SYMBOL_MESSAGE)


def coingecko_id(symbol: str) -> str:
	code = symbol.removeprefix(CRYPTO_PREFIX).upper()
	return COINGECKO_IDS.get(code, code.lower())


class FailureReason(str, Enum):
	NOT_FOUND = "not_found"
	RATE_LIMITED = "rate_limited"
	UNAVAILABLE = "unavailable"


@dataclass(slots=True, frozen=True)
class PriceQuote:
	symbol: str
	price: float
	as_of: date


@dataclass(slots=True, frozen=True)
class PriceFailure:
	symbol: str
	reason: FailureReason
	detail: str = ""


PriceResult = Union[PriceQuote, PriceFailure]


def _failure_from_error(symbol: str, exc: PriceLookupError) -> PriceFailure:
	if isinstance(exc, PriceNotFound):
		reason = FailureReason.NOT_FOUND
	elif isinstance(exc, PriceProviderUnavailable) and exc.rate_limited:
		reason = FailureReason.RATE_LIMITED
	else:
		reason = FailureReason.UNAVAILABLE
	return PriceFailure(symbol=symbol, reason=reason, detail=str(exc))


def _quote_from_cache(symbol: str, cached: Any) -> PriceQuote | None:
	try:
		return PriceQuote(
			symbol=symbol,
			price=float(cached["price"]),
			as_of=date.fromisoformat(cached["as_of"]),
		)
	except MALFORMED_PAYLOAD_ERRORS:
		logger.warning("Ignoring unreadable cached price for %s.", symbol)
		return None


def _unix_seconds(day: date) -> int:
	return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())


def _pick_latest_close(
	observations: Iterable[tuple[date, float | None]],
	day: date,
) -> tuple[date, float] | None:
	"""Latest close within [day - lookback, day], skipping gaps."""
	earliest = day - timedelta(days=HISTORY_LOOKBACK_DAYS)
	best: tuple[date, float] | None = None
	for observed_on, close in observations:
		if close in (None, 0) or not (earliest <= observed_on <= day):
			continue
		if best is None or observed_on >= best[0]:
			best = (observed_on, float(close))
	return best


class HttpPriceProvider:
	"""Shared request loop: retries throttled/unavailable responses with linear backoff."""

	def __init__(
		self,
		timeout: float = 10.0,
		max_attempts: int = 3,
		backoff_seconds: float = 0.5,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self.timeout = timeout
		self.max_attempts = max(max_attempts, 1)
		self.backoff_seconds = backoff_seconds
		self.transport = transport

	async def _get_json(self, url: str, params: dict[str, Any], label: str) -> Any:
		last_error = PriceProviderUnavailable(f"No request was made for {label}.")
		for attempt in range(1, self.max_attempts + 1):
			try:
				async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
					response = await client.get(
						url,
						params=params,
						headers={"User-Agent": "Mozilla/5.0", "Accept": "application/json"},
					)
			except httpx.TransportError as exc:
				last_error = PriceProviderUnavailable(f"Price provider request failed for {label}: {exc}")
			else:
				if response.status_code in (400, 404, 422):
					raise PriceNotFound(f"No price data for {label} (HTTP {response.status_code}).")
				if response.status_code == 429:
					last_error = PriceProviderUnavailable(
						f"Price provider rate limited {label}.",
						rate_limited=True,
					)
				elif response.status_code >= 500:
					last_error = PriceProviderUnavailable(
						f"Price provider returned HTTP {response.status_code} for {label}.",
					)
				elif response.is_error:
					raise PriceProviderUnavailable(
						f"Price provider returned HTTP {response.status_code} for {label}.",
					)
				else:
					try:
						return response.json()
					except ValueError as exc:
						raise PriceProviderUnavailable(f"Malformed price payload for {label}.") from exc

			if attempt < self.max_attempts:
				logger.info("Retrying %s after attempt %s: %s", label, attempt, last_error)
				await asyncio.sleep(self.backoff_seconds * attempt)

		raise last_error


def _parse_payload(label: str, parse: Callable[..., Any], *args: Any) -> Any:
	"""Run a payload parser, reporting an unexpected response shape as an outage."""
	try:
		return parse(*args)
	except MALFORMED_PAYLOAD_ERRORS as exc:
		raise PriceProviderUnavailable(f"Malformed price payload for {label}: {exc!r}") from exc


def _parse_yahoo_quote(payload: Any, symbol: str) -> float:
	results = (payload.get("quoteResponse") or {}).get("result") or []
	if not results:
		raise PriceNotFound(f"No quote data returned for {symbol}.")

	price = results[0].get("regularMarketPrice")
	if price in (None, 0):
		raise PriceNotFound(f"Incomplete quote data returned for {symbol}.")
	return float(price)


def _parse_yahoo_chart(payload: Any, symbol: str, day: date) -> tuple[date, float]:
	chart = payload.get("chart") or {}
	if chart.get("error"):
		raise PriceNotFound(f"Chart error for {symbol}: {chart['error']}")

	results = chart.get("result") or []
	if not results:
		raise PriceNotFound(f"No chart data returned for {symbol}.")

	result = results[0]
	timestamps = result.get("timestamp") or []
	quotes = (result.get("indicators") or {}).get("quote") or [{}]
	closes = quotes[0].get("close") or []
	observations = (
		(datetime.fromtimestamp(timestamp, tz=timezone.utc).date(), close)
		for timestamp, close in zip(timestamps, closes)
	)
	picked = _pick_latest_close(observations, day)
	if picked is None:
		raise PriceNotFound(
			f"No close for {symbol} within {HISTORY_LOOKBACK_DAYS} days before {day.isoformat()}.",
		)
	return picked


def _parse_coingecko_price(payload: Any, symbol: str, coin_id: str) -> float:
	price = (payload.get(coin_id) or {}).get("usd")
	if price in (None, 0):
		raise PriceNotFound(f"No CoinGecko price returned for {symbol} ({coin_id}).")
	return float(price)


def _parse_coingecko_range(payload: Any, symbol: str, day: date) -> tuple[date, float]:
	observations = [
		(datetime.fromtimestamp(point[0] / 1000, tz=timezone.utc).date(), point[1])
		for point in payload.get("prices") or []
		if isinstance(point, list) and len(point) >= 2
	]
	# Intraday samples arrive in time order; the last one of a day is its close.
	picked = _pick_latest_close(observations, day)
	if picked is None:
		raise PriceNotFound(f"No CoinGecko history for {symbol} near {day.isoformat()}.")
	return picked


class YahooPriceProvider(HttpPriceProvider):
	YAHOO_QUOTE_URL = "https://query1.finance.yahoo.com/v7/finance/quote"
	YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"

	async def fetch_current_price(self, symbol: str) -> float:
		"""Fetch the latest regular-market price from Yahoo's quote endpoint."""
		payload = await self._get_json(self.YAHOO_QUOTE_URL, {"symbols": symbol}, symbol)
		return _parse_payload(symbol, _parse_yahoo_quote, payload, symbol)

	async def fetch_historical_close(self, symbol: str, day: date) -> tuple[date, float]:
		"""Return the close on `day`, or on the nearest prior trading day within a week."""
		label = f"{symbol}@{day.isoformat()}"
		payload = await self._get_json(
			self.YAHOO_CHART_URL.format(symbol=symbol),
			{
				"period1": _unix_seconds(day - timedelta(days=HISTORY_LOOKBACK_DAYS)),
				"period2": _unix_seconds(day + timedelta(days=1)),
				"interval": "1d",
			},
			label,
		)
		return _parse_payload(label, _parse_yahoo_chart, payload, symbol, day)


class CoinGeckoPriceProvider(HttpPriceProvider):
	COINGECKO_API_BASE = "https://api.coingecko.com/api/v3"

	async def fetch_current_price(self, symbol: str) -> float:
		coin_id = coingecko_id(symbol)
		payload = await self._get_json(
			f"{self.COINGECKO_API_BASE}/simple/price",
			{"ids": coin_id, "vs_currencies": "usd"},
			symbol,
		)
		return _parse_payload(symbol, _parse_coingecko_price, payload, symbol, coin_id)

	async def fetch_historical_close(self, symbol: str, day: date) -> tuple[date, float]:
		coin_id = coingecko_id(symbol)
		label = f"{symbol}@{day.isoformat()}"
		payload = await self._get_json(
			f"{self.COINGECKO_API_BASE}/coins/{coin_id}/market_chart/range",
			{
				"vs_currency": "usd",
				"from": _unix_seconds(day - timedelta(days=HISTORY_LOOKBACK_DAYS)),
				"to": _unix_seconds(day + timedelta(days=1)) - 1,
			},
			label,
		)
		return _parse_payload(label, _parse_coingecko_range, payload, symbol, day)




class MarketDataClient:
	"""Price Source Adapter: read-through cached prices with typed failures."""

	def __init__(
		self,
		cache: CacheStore,
		stock_provider: YahooPriceProvider | None = None,
		crypto_provider: CoinGeckoPriceProvider | None = None,
		known_bad_symbols: Iterable[str] = (),
		current_ttl_seconds: int = CURRENT_PRICE_TTL_SECONDS,
		historical_ttl_seconds: int = HISTORICAL_PRICE_TTL_SECONDS,
		now: Callable[[], datetime] = utc_now,
	) -> None:
		self.cache = FailOpenCache(cache)
		self.stock_provider = stock_provider or YahooPriceProvider()
		self.crypto_provider = crypto_provider or CoinGeckoPriceProvider()
		self.known_bad_symbols = frozenset(symbol.upper() for symbol in known_bad_symbols)
		self.current_ttl_seconds = current_ttl_seconds
		self.historical_ttl_seconds = historical_ttl_seconds
		self._now = now

	def _provider_for(self, symbol: str) -> YahooPriceProvider | CoinGeckoPriceProvider:
		return self.crypto_provider if is_crypto_symbol(symbol) else self.stock_provider

	async def get_current_price(self, symbol: str) -> PriceResult:
		cache_key = current_price_key(symbol)
		cached = await self.cache.get(cache_key)
		if cached is not None:
			cached_quote = _quote_from_cache(symbol, cached)
			if cached_quote is not None:
				return cached_quote

		try:
			price = await self._provider_for(symbol).fetch_current_price(symbol)
		except PriceLookupError as exc:
			return _failure_from_error(symbol, exc)

		quote = PriceQuote(symbol=symbol, price=price, as_of=utc_today(self._now))
		await self.cache.set(
			cache_key,
			{"price": quote.price, "as_of": quote.as_of.isoformat()},
			self.current_ttl_seconds,
		)
		return quote

	async def get_historical_close(
		self,
		symbol: str,
		day: date,
		refresh: bool = False,
	) -> PriceResult:
		"""Close on `day` or the nearest prior trading day; `refresh` skips the cached close."""
		if symbol.upper() in self.known_bad_symbols:
			return PriceFailure(
				symbol=symbol,
				reason=FailureReason.NOT_FOUND,
				detail=f"{symbol} is excluded from historical lookups.",
			)

		cache_key = historical_price_key(symbol, day)
		cached = None if refresh else await self.cache.get(cache_key)
		if cached is not None:
			cached_quote = _quote_from_cache(symbol, cached)
			if cached_quote is not None:
				return cached_quote

		try:
			observed_on, close = await self._provider_for(symbol).fetch_historical_close(symbol, day)
		except PriceLookupError as exc:
			return _failure_from_error(symbol, exc)

		# A close for today can still move; only settled days get the long TTL.
		ttl_seconds = (
			self.historical_ttl_seconds if day < utc_today(self._now) else self.current_ttl_seconds
		)
		await self.cache.set(
			cache_key,
			{"price": close, "as_of": observed_on.isoformat()},
			ttl_seconds,
		)
		return PriceQuote(symbol=symbol, price=close, as_of=observed_on)
