from __future__ import annotations

from datetime import date
import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from portfolio_tracker.dates import utc_now
from portfolio_tracker.models import StockLot, UserAccount
from portfolio_tracker.schemas import LotCreate, LotUpdate
from portfolio_tracker.security import normalize_user_id
from portfolio_tracker.services.valuation import Lot

logger = logging.getLogger(__name__)


class LotNotFoundError(LookupError):
	"""Raised when a lot does not exist or belongs to another user."""


def weighted_average_price(
	existing_quantity: float,
	existing_price: float,
	added_quantity: float,
	added_price: float,
) -> float:
	"""Average cost after buying `added_quantity` more of an existing position."""
	total_quantity = existing_quantity + added_quantity
	if total_quantity <= 0:
		raise ValueError("Merged quantity must be positive.")
	return (existing_quantity * existing_price + added_quantity * added_price) / total_quantity


def to_lot(record: StockLot) -> Lot:
	return Lot(
		id=record.id or 0,
		symbol=record.symbol,
		quantity=record.quantity,
		purchase_price=record.purchase_price,
		purchase_date=record.purchase_date,
	)


def ensure_user(session: Session, user_id: str) -> UserAccount:
	user = session.get(UserAccount, user_id)
	if user is None:
		user = UserAccount(username=user_id)
		session.add(user)
		session.commit()
		session.refresh(user)
	return user


def list_lot_records(session: Session, user_id: str) -> list[StockLot]:
	return list(
		session.exec(
			select(StockLot).where(StockLot.user_id == user_id).order_by(StockLot.id),
		),
	)


def _get_owned_lot(session: Session, user_id: str, lot_id: int) -> StockLot:
	record = session.get(StockLot, lot_id)
	if record is None or record.user_id != user_id:
		raise LotNotFoundError("Lot not found.")
	return record


def add_lot(
	session: Session,
	user_id: str,
	payload: LotCreate,
	today: date | None = None,
) -> StockLot:
	"""Record a purchase, folding a repeat buy of a held symbol into its average cost."""
	ensure_user(session, user_id)
	purchase_date = payload.purchase_date or today or utc_now().date()
	existing = session.exec(
		select(StockLot)
		.where(StockLot.user_id == user_id)
		.where(StockLot.symbol == payload.symbol),
	).first()

	if existing is not None:
		existing.purchase_price = weighted_average_price(
			existing.quantity,
			existing.purchase_price,
			payload.quantity,
			payload.purchase_price,
		)
		existing.quantity = existing.quantity + payload.quantity
		existing.purchase_date = min(existing.purchase_date, purchase_date)
		if payload.company_name and not existing.company_name:
			existing.company_name = payload.company_name
		existing.updated_at = utc_now()
		record = existing
		logger.info("Merged %s buy into lot %s for %s.", payload.symbol, existing.id, user_id)
	else:
		record = StockLot(
			user_id=user_id,
			symbol=payload.symbol,
			company_name=payload.company_name,
			quantity=payload.quantity,
			purchase_price=payload.purchase_price,
			purchase_date=purchase_date,
		)

	session.add(record)
	session.commit()
	session.refresh(record)
	return record


def update_lot(session: Session, user_id: str, lot_id: int, payload: LotUpdate) -> StockLot:
	record = _get_owned_lot(session, user_id, lot_id)
	record.quantity = payload.quantity
	record.purchase_price = payload.purchase_price
	record.purchase_date = payload.purchase_date
	record.updated_at = utc_now()
	session.add(record)
	session.commit()
	session.refresh(record)
	return record


def delete_lot(session: Session, user_id: str, lot_id: int) -> None:
	record = _get_owned_lot(session, user_id, lot_id)
	session.delete(record)
	session.commit()


class SqlLotStore:
	"""Read side of the lot table, shaped for the valuation engine."""

	def __init__(self, engine: Engine) -> None:
		self.engine = engine

	async def list_lots(self, user_id: str) -> list[Lot]:
		with Session(self.engine) as session:
			return [to_lot(record) for record in list_lot_records(session, normalize_user_id(user_id))]

	async def list_users(self) -> dict[str, str | None]:
		"""Map every known user id (registered or holding lots) to its avatar."""
		with Session(self.engine) as session:
			users = {user.username: user.avatar for user in session.exec(select(UserAccount))}
			for user_id in session.exec(select(StockLot.user_id).distinct()):
				users.setdefault(user_id, None)
		return users
