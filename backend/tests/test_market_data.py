import asyncio
from datetime import date, datetime, timezone

import httpx
import pytest

from portfolio_tracker.errors import PriceNotFound, PriceProviderUnavailable
from portfolio_tracker.services.cache import MemoryCacheStore, historical_price_key
from portfolio_tracker.services.market_data import (
	CoinGeckoPriceProvider,
	FailureReason,
	MarketDataClient,
	PriceFailure,
	PriceQuote,
	YahooPriceProvider,
	coingecko_id,
	normalize_symbol,
)
from portfolio_tracker.services.valuation import HistoricalValuationCalculator, Lot


def _fixed_now() -> datetime:
	return datetime(2024, 2, 5, 15, 0, tzinfo=timezone.utc)


def _timestamp(day: date) -> int:
	return int(datetime(day.year, day.month, day.day, 14, 30, tzinfo=timezone.utc).timestamp())


class RecordingPriceProvider:
	def __init__(self, outcomes: dict[str, object] | None = None) -> None:
		self._outcomes = outcomes or {}
		self.current_calls: list[str] = []
		self.historical_calls: list[tuple[str, date]] = []

	def _resolve(self, symbol: str) -> object:
		outcome = self._outcomes.get(symbol, 100.0)
		if isinstance(outcome, Exception):
			raise outcome
		return outcome

	async def fetch_current_price(self, symbol: str) -> float:
		self.current_calls.append(symbol)
		return float(self._resolve(symbol))

	async def fetch_historical_close(self, symbol: str, day: date) -> tuple[date, float]:
		self.historical_calls.append((symbol, day))
		return day, float(self._resolve(symbol))


def _build_client(
	stock_provider: RecordingPriceProvider | None = None,
	crypto_provider: RecordingPriceProvider | None = None,
	cache: MemoryCacheStore | None = None,
	known_bad_symbols: tuple[str, ...] = (),
) -> MarketDataClient:
	return MarketDataClient(
		cache or MemoryCacheStore(),
		stock_provider=stock_provider or RecordingPriceProvider(),
		crypto_provider=crypto_provider or RecordingPriceProvider(),
		known_bad_symbols=known_bad_symbols,
		now=_fixed_now,
	)


def test_normalize_symbol_uppercases_stock_and_crypto_tickers() -> None:
	assert normalize_symbol(" aapl ") == "AAPL"
	assert normalize_symbol("brk-b") == "BRK-B"
	assert normalize_symbol("0700.hk") == "0700.HK"
	assert normalize_symbol("^gspc") == "^GSPC"
	assert normalize_symbol("@btc") == "@BTC"


@pytest.mark.parametrize("symbol", ["", "AAPL!", "@", "BRK--B", "A B"])
def test_normalize_symbol_rejects_malformed_tickers(symbol: str) -> None:
	with pytest.raises(ValueError):
		normalize_symbol(symbol)


def test_coingecko_id_maps_known_codes_and_lowercases_unknown_ones() -> None:
	assert coingecko_id("@BTC") == "bitcoin"
	assert coingecko_id("@AVAX") == "avalanche-2"
	assert coingecko_id("@PEPE") == "pepe"


def test_yahoo_historical_close_uses_nearest_prior_trading_day() -> None:
	requests: list[httpx.Request] = []

	def handler(request: httpx.Request) -> httpx.Response:
		requests.append(request)
		return httpx.Response(
			200,
			json={
				"chart": {
					"result": [
						{
							"timestamp": [
								_timestamp(date(2024, 1, 31)),
								_timestamp(date(2024, 2, 1)),
								_timestamp(date(2024, 2, 2)),
							],
							"indicators": {"quote": [{"close": [170.0, 171.2, None]}]},
						},
					],
					"error": None,
				},
			},
		)

	provider = YahooPriceProvider(transport=httpx.MockTransport(handler))
	observed_on, close = asyncio.run(provider.fetch_historical_close("AAPL", date(2024, 2, 3)))

	assert observed_on == date(2024, 2, 1)
	assert close == 171.2
	assert requests[0].url.path == "/v8/finance/chart/AAPL"
	assert requests[0].url.params["interval"] == "1d"


def test_yahoo_current_price_reads_regular_market_price() -> None:
	def handler(request: httpx.Request) -> httpx.Response:
		assert request.url.params["symbols"] == "MSFT"
		return httpx.Response(
			200,
			json={"quoteResponse": {"result": [{"symbol": "MSFT", "regularMarketPrice": 402.5}]}},
		)

	provider = YahooPriceProvider(transport=httpx.MockTransport(handler))

	assert asyncio.run(provider.fetch_current_price("MSFT")) == 402.5


def test_yahoo_provider_reports_missing_symbol_as_not_found() -> None:
	provider = YahooPriceProvider(
		transport=httpx.MockTransport(lambda request: httpx.Response(404, json={})),
	)

	with pytest.raises(PriceNotFound):
		asyncio.run(provider.fetch_historical_close("NOPE", date(2024, 2, 1)))


def test_provider_retries_rate_limits_before_giving_up() -> None:
	calls: list[int] = []

	def handler(request: httpx.Request) -> httpx.Response:
		calls.append(1)
		return httpx.Response(429, json={})

	provider = YahooPriceProvider(
		max_attempts=3,
		backoff_seconds=0,
		transport=httpx.MockTransport(handler),
	)

	with pytest.raises(PriceProviderUnavailable) as exc_info:
		asyncio.run(provider.fetch_current_price("AAPL"))

	assert exc_info.value.rate_limited is True
	assert len(calls) == 3


def test_provider_recovers_after_transient_server_error() -> None:
	responses = [
		httpx.Response(503, json={}),
		httpx.Response(200, json={"bitcoin": {"usd": 43125.5}}),
	]

	def handler(request: httpx.Request) -> httpx.Response:
		return responses.pop(0)

	provider = CoinGeckoPriceProvider(backoff_seconds=0, transport=httpx.MockTransport(handler))

	assert asyncio.run(provider.fetch_current_price("@BTC")) == 43125.5
	assert responses == []


def test_coingecko_history_takes_last_sample_of_the_day() -> None:
	def handler(request: httpx.Request) -> httpx.Response:
		assert request.url.path == "/api/v3/coins/ethereum/market_chart/range"
		day_start = datetime(2024, 2, 1, tzinfo=timezone.utc).timestamp() * 1000
		return httpx.Response(
			200,
			json={
				"prices": [
					[day_start - 3_600_000, 2290.0],
					[day_start + 3_600_000, 2301.0],
					[day_start + 82_800_000, 2310.5],
				],
			},
		)

	provider = CoinGeckoPriceProvider(transport=httpx.MockTransport(handler))
	observed_on, close = asyncio.run(provider.fetch_historical_close("@ETH", date(2024, 2, 1)))

	assert observed_on == date(2024, 2, 1)
	assert close == 2310.5


def test_market_data_client_routes_crypto_symbols_to_crypto_provider() -> None:
	stock_provider = RecordingPriceProvider()
	crypto_provider = RecordingPriceProvider({"@BTC": 43000.0})
	client = _build_client(stock_provider, crypto_provider)

	result = asyncio.run(client.get_current_price("@BTC"))

	assert result == PriceQuote(symbol="@BTC", price=43000.0, as_of=date(2024, 2, 5))
	assert crypto_provider.current_calls == ["@BTC"]
	assert stock_provider.current_calls == []


def test_market_data_client_caches_historical_closes() -> None:
	stock_provider = RecordingPriceProvider({"AAPL": 171.2})
	cache = MemoryCacheStore()
	client = _build_client(stock_provider, cache=cache)

	first = asyncio.run(client.get_historical_close("AAPL", date(2024, 2, 1)))
	second = asyncio.run(client.get_historical_close("AAPL", date(2024, 2, 1)))

	assert first == second
	assert stock_provider.historical_calls == [("AAPL", date(2024, 2, 1))]
	assert asyncio.run(cache.get(historical_price_key("AAPL", date(2024, 2, 1)))) == {
		"price": 171.2,
		"as_of": "2024-02-01",
	}


def test_market_data_client_returns_typed_failures() -> None:
	stock_provider = RecordingPriceProvider(
		{
			"GONE": PriceNotFound("delisted"),
			"BUSY": PriceProviderUnavailable("slow down", rate_limited=True),
			"DOWN": PriceProviderUnavailable("HTTP 502"),
		},
	)
	client = _build_client(stock_provider)

	async def scenario() -> list[object]:
		return [
			await client.get_historical_close(symbol, date(2024, 2, 1))
			for symbol in ("GONE", "BUSY", "DOWN")
		]

	results = asyncio.run(scenario())

	assert all(isinstance(result, PriceFailure) for result in results)
	assert [result.reason for result in results] == [
		FailureReason.NOT_FOUND,
		FailureReason.RATE_LIMITED,
		FailureReason.UNAVAILABLE,
	]


def test_known_bad_symbols_skip_network_lookups() -> None:
	stock_provider = RecordingPriceProvider()
	client = _build_client(stock_provider, known_bad_symbols=("TEM",))

	result = asyncio.run(client.get_historical_close("TEM", date(2024, 2, 1)))

	assert isinstance(result, PriceFailure)
	assert result.reason is FailureReason.NOT_FOUND
	assert stock_provider.historical_calls == []


def test_refresh_bypasses_cached_close_for_today() -> None:
	stock_provider = RecordingPriceProvider({"AAPL": 181.0})
	client = _build_client(stock_provider)

	async def scenario() -> list[object]:
		return [
			await client.get_historical_close("AAPL", date(2024, 2, 5)),
			await client.get_historical_close("AAPL", date(2024, 2, 5)),
			await client.get_historical_close("AAPL", date(2024, 2, 5), refresh=True),
		]

	results = asyncio.run(scenario())

	assert all(isinstance(result, PriceQuote) for result in results)
	assert stock_provider.historical_calls == [("AAPL", date(2024, 2, 5)), ("AAPL", date(2024, 2, 5))]


@pytest.mark.parametrize(
	"body",
	[
		{"chart": {"result": [None]}},
		["unexpected", "list"],
		{"chart": {"result": [{"timestamp": [1706797800], "indicators": {"quote": [{"close": ["n/a"]}]}}]}},
		{"chart": {"result": [{"timestamp": ["soon"], "indicators": {"quote": [{"close": [171.2]}]}}]}},
	],
)
def test_yahoo_chart_with_unexpected_shape_reports_unavailable(body: object) -> None:
	provider = YahooPriceProvider(
		transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)),
	)

	with pytest.raises(PriceProviderUnavailable, match="Malformed"):
		asyncio.run(provider.fetch_historical_close("AAPL", date(2024, 2, 1)))


@pytest.mark.parametrize(
	"body",
	[None, {"bitcoin": "43000"}, {"bitcoin": {"usd": "lots"}}],
)
def test_coingecko_price_with_unexpected_shape_reports_unavailable(body: object) -> None:
	provider = CoinGeckoPriceProvider(
		transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)),
	)

	with pytest.raises(PriceProviderUnavailable, match="Malformed"):
		asyncio.run(provider.fetch_current_price("@BTC"))


def test_malformed_provider_payload_falls_back_to_purchase_price() -> None:
	provider = YahooPriceProvider(
		transport=httpx.MockTransport(
			lambda request: httpx.Response(200, json={"chart": {"result": [None]}}),
		),
	)
	client = MarketDataClient(MemoryCacheStore(), stock_provider=provider, now=_fixed_now)
	calculator = HistoricalValuationCalculator(client, MemoryCacheStore(), now=_fixed_now)
	lots = [Lot(id=1, symbol="AAPL", quantity=10, purchase_price=160.50, purchase_date=date(2024, 1, 1))]

	result = asyncio.run(client.get_historical_close("AAPL", date(2024, 2, 1)))
	total = asyncio.run(calculator.calculate(lots, date(2024, 2, 1)))

	assert isinstance(result, PriceFailure)
	assert result.reason is FailureReason.UNAVAILABLE
	assert total == 1605.0


def test_unreadable_cached_price_is_fetched_again() -> None:
	stock_provider = RecordingPriceProvider({"AAPL": 171.2})
	cache = MemoryCacheStore()
	client = _build_client(stock_provider, cache=cache)
	asyncio.run(cache.set(historical_price_key("AAPL", date(2024, 2, 1)), {"price": "oops"}, 60))

	result = asyncio.run(client.get_historical_close("AAPL", date(2024, 2, 1)))

	assert result == PriceQuote(symbol="AAPL", price=171.2, as_of=date(2024, 2, 1))
	assert stock_provider.historical_calls == [("AAPL", date(2024, 2, 1))]


def test_transport_errors_exhaust_into_unavailable_even_with_zero_attempts() -> None:
	calls: list[int] = []

	def handler(request: httpx.Request) -> httpx.Response:
		calls.append(1)
		raise httpx.ConnectError("connection refused", request=request)

	provider = CoinGeckoPriceProvider(
		max_attempts=0,
		backoff_seconds=0,
		transport=httpx.MockTransport(handler),
	)

	with pytest.raises(PriceProviderUnavailable, match="request failed") as exc_info:
		asyncio.run(provider.fetch_current_price("BTC"))

	assert exc_info.value.rate_limited is False
	assert len(calls) == 1
