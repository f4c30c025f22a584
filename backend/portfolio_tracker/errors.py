from __future__ import annotations


class PriceLookupError(RuntimeError):
	"""Raised when a market data provider cannot return a usable price."""


class PriceNotFound(PriceLookupError):
	"""The provider has no price for the symbol/date."""


class PriceProviderUnavailable(PriceLookupError):
	"""The provider failed, timed out or throttled the request."""

	def __init__(self, message: str, rate_limited: bool = False) -> None:
		super().__init__(message)
		self.rate_limited = rate_limited


class CacheUnavailable(RuntimeError):
	"""Raised by a cache backend that cannot be reached."""
