from __future__ import annotations

import datetime as dt
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from portfolio_tracker.dates import coerce_utc_datetime
from portfolio_tracker.services.market_data import normalize_symbol

LeaderboardMetric = Literal["total", "daily", "weekly", "worth"]


def _normalize_optional_text(value: str | None) -> str | None:
	if value is None:
		return None

	stripped = value.strip()
	return stripped or None


def _serialize_utc(value: dt.datetime | None) -> str | None:
	if value is None:
		return None
	return coerce_utc_datetime(value).isoformat().replace("+00:00", "Z")


class ApiModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LotCreate(ApiModel):
	symbol: str = Field(min_length=1, max_length=32)
	company_name: Optional[str] = Field(default=None, max_length=120)
	quantity: float = Field(gt=0)
	purchase_price: float = Field(gt=0)
	purchase_date: Optional[dt.date] = None

	@field_validator("symbol", mode="before")
	@classmethod
	def validate_symbol(cls, value: str) -> str:
		return normalize_symbol(value)

	@field_validator("company_name", mode="before")
	@classmethod
	def normalize_company_name(cls, value: str | None) -> str | None:
		return _normalize_optional_text(value)


class LotUpdate(ApiModel):
	quantity: float = Field(gt=0)
	purchase_price: float = Field(gt=0)
	purchase_date: dt.date


class LotRead(ApiModel):
	id: int
	symbol: str
	company_name: Optional[str] = None
	quantity: float
	purchase_price: float
	purchase_date: dt.date


class ValuationPoint(ApiModel):
	date: dt.date
	value: float


class ValuationResult(ApiModel):
	user_id: str
	date: dt.date
	total_value: float


class PerformanceSeries(ApiModel):
	user_id: str
	lookback_days: int
	performance: list[ValuationPoint]
	generated_at: dt.datetime

	@field_serializer("generated_at")
	def serialize_generated_at(self, value: dt.datetime) -> str | None:
		return _serialize_utc(value)


class LatestPurchase(ApiModel):
	symbol: str
	date: dt.date
	price: float


class LeaderboardEntry(ApiModel):
	rank: int = 0
	user_id: str
	avatar: Optional[str] = None
	starting_amount: float
	current_worth: float
	total_gain: float
	total_gain_percentage: float
	daily_gain: float
	daily_gain_percentage: float
	weekly_gain: float
	weekly_gain_percentage: float
	top_gainer: Optional[str] = None
	top_gainer_percentage: Optional[float] = None
	latest_purchase: Optional[LatestPurchase] = None


class CacheClearResult(ApiModel):
	deleted: int
