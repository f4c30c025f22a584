from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from portfolio_tracker.dates import utc_now
from portfolio_tracker.services.market_data import is_crypto_symbol


class UserAccount(SQLModel, table=True):
	username: str = Field(primary_key=True, max_length=32)
	avatar: Optional[str] = Field(default=None, max_length=500)
	created_at: datetime = Field(default_factory=utc_now, nullable=False)


class StockLot(SQLModel, table=True):
	__tablename__ = "user_stocks"

	id: Optional[int] = Field(default=None, primary_key=True)
	user_id: str = Field(index=True, max_length=32)
	symbol: str = Field(index=True, max_length=32)
	company_name: Optional[str] = Field(default=None, max_length=120)
	quantity: float = Field(gt=0)
	purchase_price: float = Field(gt=0)
	purchase_date: date = Field(nullable=False)
	created_at: datetime = Field(default_factory=utc_now, nullable=False)
	updated_at: datetime = Field(default_factory=utc_now, nullable=False)

	@property
	def is_crypto(self) -> bool:
		return is_crypto_symbol(self.symbol)
