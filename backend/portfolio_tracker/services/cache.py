from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from fnmatch import fnmatchcase
import json
import logging
import re
from time import monotonic
from typing import Any, Callable, Iterable

from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

from portfolio_tracker.errors import CacheUnavailable
from portfolio_tracker.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheEntry:
	payload: str
	expires_at: float


def _decode(key: str, payload: str) -> Any | None:
	try:
		return json.loads(payload)
	except ValueError:
		logger.warning("Discarding unreadable cache entry %s.", key)
		return None


class CacheStore:
	"""Async key-value store with per-key TTL.

	Values must be JSON-serializable. Both backends round-trip values through
	JSON so callers observe the same types regardless of deployment shape.
	"""

	async def get(self, key: str) -> Any | None:
		raise NotImplementedError

	async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
		raise NotImplementedError

	async def delete(self, key: str) -> bool:
		raise NotImplementedError

	async def delete_matching(self, pattern: str) -> int:
		raise NotImplementedError

	async def close(self) -> None:
		return None


class MemoryCacheStore(CacheStore):
	"""Process-local store; entries are lost on restart."""

	def __init__(self, now: Callable[[], float] | None = None) -> None:
		self._entries: dict[str, CacheEntry] = {}
		self._now = now or monotonic

	async def get(self, key: str) -> Any | None:
		entry = self._entries.get(key)
		if entry is None:
			return None
		if entry.expires_at <= self._now():
			del self._entries[key]
			return None
		value = _decode(key, entry.payload)
		if value is None:
			del self._entries[key]
		return value

	async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
		self._entries[key] = CacheEntry(
			payload=json.dumps(value),
			expires_at=self._now() + ttl_seconds,
		)

	async def delete(self, key: str) -> bool:
		return self._entries.pop(key, None) is not None

	async def delete_matching(self, pattern: str) -> int:
		matched_keys = [key for key in self._entries if fnmatchcase(key, pattern)]
		for key in matched_keys:
			del self._entries[key]
		return len(matched_keys)

	def clear(self) -> None:
		self._entries.clear()


class RedisCacheStore(CacheStore):
	"""Shared store backed by Redis; survives restarts and is visible to every instance."""

	def __init__(self, client: redis_asyncio.Redis) -> None:
		self._client = client

	@classmethod
	def from_url(cls, url: str) -> RedisCacheStore:
		return cls(redis_asyncio.Redis.from_url(url, decode_responses=True))

	async def get(self, key: str) -> Any | None:
		try:
			payload = await self._client.get(key)
		except RedisError as exc:
			raise CacheUnavailable(f"Redis GET failed for {key}.") from exc

		if payload is None:
			return None
		return _decode(key, payload)

	async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
		try:
			await self._client.set(key, json.dumps(value), ex=max(int(ttl_seconds), 1))
		except RedisError as exc:
			raise CacheUnavailable(f"Redis SET failed for {key}.") from exc

	async def delete(self, key: str) -> bool:
		try:
			return bool(await self._client.delete(key))
		except RedisError as exc:
			raise CacheUnavailable(f"Redis DEL failed for {key}.") from exc

	async def delete_matching(self, pattern: str) -> int:
		try:
			keys = [key async for key in self._client.scan_iter(match=pattern)]
			if not keys:
				return 0
			return int(await self._client.delete(*keys))
		except RedisError as exc:
			raise CacheUnavailable(f"Redis pattern delete failed for {pattern}.") from exc

	async def close(self) -> None:
		await self._client.aclose()


def build_cache_store(settings: Settings) -> CacheStore:
	"""Pick the cache backend configured for this deployment."""
	backend_name = settings.cache_backend_name()
	if backend_name == "redis":
		if not settings.redis_url:
			logger.warning("PORTFOLIO_TRACKER_REDIS_URL is not set; using in-memory cache.")
			return MemoryCacheStore()
		logger.info("Using Redis cache at %s", settings.redis_url)
		return RedisCacheStore.from_url(settings.redis_url)

	logger.info("Using in-memory cache (not shared across instances).")
	return MemoryCacheStore()


class FailOpenCache:
	"""Wrap a store so that an unreachable backend behaves like an empty cache."""

	def __init__(self, store: CacheStore) -> None:
		self.store = store

	async def get(self, key: str) -> Any | None:
		try:
			return await self.store.get(key)
		except CacheUnavailable as exc:
			logger.warning("Cache read skipped for %s: %s", key, exc)
			return None

	async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
		try:
			await self.store.set(key, value, ttl_seconds)
		except CacheUnavailable as exc:
			logger.warning("Cache write skipped for %s: %s", key, exc)

	async def delete(self, key: str) -> bool:
		try:
			return await self.store.delete(key)
		except CacheUnavailable as exc:
			logger.warning("Cache delete skipped for %s: %s", key, exc)
			return False

	async def delete_matching(self, pattern: str) -> int:
		try:
			return await self.store.delete_matching(pattern)
		except CacheUnavailable as exc:
			logger.warning("Cache pattern delete skipped for %s: %s", pattern, exc)
			return 0


def current_price_key(symbol: str) -> str:
	return f"price:current:{symbol}"


def historical_price_key(symbol: str, day: date) -> str:
	return f"price:hist:{symbol}:{day.isoformat()}"


def valuation_key(day: date, symbols: Iterable[str], holdings_digest: str) -> str:
	"""Order-independent key for a lot set valued on one date."""
	return f"valuation:{day.isoformat()}:{symbol_set_segment(symbols)}:{holdings_digest}"


def valuation_pattern(symbols: Iterable[str]) -> str:
	return f"valuation:*:{escape_pattern(symbol_set_segment(symbols))}:*"


def symbol_set_segment(symbols: Iterable[str]) -> str:
	return ",".join(sorted(set(symbols)))


def series_key(user_id: str, lookback_days: int) -> str:
	return f"perfseries:{user_id}:{lookback_days}"


def series_generated_at_key(user_id: str, lookback_days: int) -> str:
	return f"{series_key(user_id, lookback_days)}:generatedAt"


def user_series_pattern(user_id: str) -> str:
	return f"perfseries:{escape_pattern(user_id)}:*"


def escape_pattern(value: str) -> str:
	"""Escape glob metacharacters so a literal segment matches only itself."""
	return re.sub(r"([*?\[\]])", r"[\1]", value)
