from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlmodel import Session

from portfolio_tracker.database import engine, get_session, init_db
from portfolio_tracker.dates import parse_iso_date
from portfolio_tracker.logging_config import configure_logging
from portfolio_tracker.schemas import (
	CacheClearResult,
	LeaderboardEntry,
	LeaderboardMetric,
	LotCreate,
	LotRead,
	LotUpdate,
	PerformanceSeries,
	ValuationResult,
)
from portfolio_tracker.security import normalize_user_id, verify_api_token
from portfolio_tracker.services.cache import build_cache_store
from portfolio_tracker.services.engine import PortfolioEngine
from portfolio_tracker.services.leaderboard import LEADERBOARD_METRICS
from portfolio_tracker.services.lots import (
	LotNotFoundError,
	SqlLotStore,
	add_lot,
	delete_lot,
	list_lot_records,
	to_lot,
	update_lot,
)
from portfolio_tracker.services.market_data import (
	CoinGeckoPriceProvider,
	MarketDataClient,
	YahooPriceProvider,
)
from portfolio_tracker.settings import get_settings

SessionDependency = Annotated[Session, Depends(get_session)]
TokenDependency = Annotated[None, Depends(verify_api_token)]
settings = get_settings()
logger = logging.getLogger(__name__)


def build_portfolio_engine() -> PortfolioEngine:
	cache_store = build_cache_store(settings)
	provider_options = {
		"timeout": settings.quote_timeout_seconds,
		"max_attempts": settings.provider_max_attempts,
		"backoff_seconds": settings.provider_backoff_seconds,
	}
	market_data_client = MarketDataClient(
		cache_store,
		stock_provider=YahooPriceProvider(**provider_options),
		crypto_provider=CoinGeckoPriceProvider(**provider_options),
		known_bad_symbols=settings.known_bad_symbol_set(),
	)
	return PortfolioEngine(SqlLotStore(engine), market_data_client, cache_store)


portfolio_engine = build_portfolio_engine()


@asynccontextmanager
async def lifespan(_: FastAPI):
	configure_logging()
	settings.validate_runtime()
	init_db()

	try:
		yield
	finally:
		await portfolio_engine.close()


app = FastAPI(
	title="Portfolio Tracker API",
	version="0.1.0",
	lifespan=lifespan,
)

app.add_middleware(
	CORSMiddleware,
	allow_origins=settings.cors_origins(),
	allow_credentials=False,
	allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
	allow_headers=["Content-Type", "X-API-Key", "Authorization"],
)


def _normalize_user_id(user_id: str) -> str:
	try:
		return normalize_user_id(user_id)
	except ValueError as exc:
		raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/api/health")
def healthcheck() -> dict[str, str]:
	return {"status": "ok"}


@app.get("/api/users/{user_id}/lots", response_model=list[LotRead])
def list_lots(user_id: str, session: SessionDependency) -> list[LotRead]:
	normalized_user_id = _normalize_user_id(user_id)
	return [LotRead.model_validate(record) for record in list_lot_records(session, normalized_user_id)]


@app.post("/api/users/{user_id}/lots", response_model=LotRead, status_code=201)
async def create_lot(
	user_id: str,
	payload: LotCreate,
	_: TokenDependency,
	session: SessionDependency,
) -> LotRead:
	normalized_user_id = _normalize_user_id(user_id)
	previous_lots = [to_lot(record) for record in list_lot_records(session, normalized_user_id)]
	record = add_lot(session, normalized_user_id, payload)
	await portfolio_engine.invalidate_user_caches(normalized_user_id, previous_lots=previous_lots)
	return LotRead.model_validate(record)


@app.put("/api/users/{user_id}/lots/{lot_id}", response_model=LotRead)
async def edit_lot(
	user_id: str,
	lot_id: int,
	payload: LotUpdate,
	_: TokenDependency,
	session: SessionDependency,
) -> LotRead:
	normalized_user_id = _normalize_user_id(user_id)
	previous_lots = [to_lot(record) for record in list_lot_records(session, normalized_user_id)]
	try:
		record = update_lot(session, normalized_user_id, lot_id, payload)
	except LotNotFoundError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc

	await portfolio_engine.invalidate_user_caches(normalized_user_id, previous_lots=previous_lots)
	return LotRead.model_validate(record)


@app.delete("/api/users/{user_id}/lots/{lot_id}", status_code=204)
async def remove_lot(
	user_id: str,
	lot_id: int,
	_: TokenDependency,
	session: SessionDependency,
) -> Response:
	normalized_user_id = _normalize_user_id(user_id)
	previous_lots = [to_lot(record) for record in list_lot_records(session, normalized_user_id)]
	try:
		delete_lot(session, normalized_user_id, lot_id)
	except LotNotFoundError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc

	await portfolio_engine.invalidate_user_caches(normalized_user_id, previous_lots=previous_lots)
	return Response(status_code=204)


@app.get("/api/users/{user_id}/value", response_model=ValuationResult)
async def get_portfolio_value(
	user_id: str,
	as_of: str | None = None,
	refresh: bool = False,
) -> ValuationResult:
	try:
		target_date = parse_iso_date(as_of) if as_of else None
		return await portfolio_engine.get_portfolio_value(user_id, target_date, force_refresh=refresh)
	except ValueError as exc:
		raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/api/users/{user_id}/performance", response_model=PerformanceSeries)
async def get_performance(
	user_id: str,
	days: Annotated[int, Query(ge=0, le=3660)] = 30,
	refresh: bool = False,
	force: bool = False,
) -> PerformanceSeries:
	try:
		return await portfolio_engine.get_performance_series(user_id, days, refresh=refresh, force=force)
	except ValueError as exc:
		raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/api/leaderboard", response_model=list[LeaderboardEntry])
async def get_leaderboard(
	metric: LeaderboardMetric = "total",
	refresh: bool = False,
) -> list[LeaderboardEntry]:
	return await portfolio_engine.get_leaderboard(metric, refresh=refresh)


@app.post("/api/leaderboard/refresh")
async def refresh_leaderboard(_: TokenDependency) -> dict[str, int]:
	"""Rebuild every leaderboard ranking; intended for a scheduled job."""
	updated: dict[str, int] = {}
	for metric in LEADERBOARD_METRICS:
		entries = await portfolio_engine.get_leaderboard(metric, refresh=True)
		updated[metric] = len(entries)
	return updated


@app.post("/api/cache/clear", response_model=CacheClearResult)
async def clear_cache(_: TokenDependency, user_id: str | None = None) -> CacheClearResult:
	if user_id is None:
		return CacheClearResult(deleted=await portfolio_engine.invalidate_all_series())

	try:
		deleted = await portfolio_engine.invalidate_user_caches(user_id)
	except ValueError as exc:
		raise HTTPException(status_code=422, detail=str(exc)) from exc
	return CacheClearResult(deleted=deleted)
