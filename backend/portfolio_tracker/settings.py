from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


DATA_DIR = Path(__file__).resolve().parent.parent / "data"
CACHE_BACKENDS = ("memory", "redis")


def _split_csv(value: str | None) -> list[str]:
	return [item.strip() for item in (value or "").split(",") if item.strip()]


class Settings(BaseSettings):
	"""Runtime configuration for the valuation engine and its HTTP wrapper."""

	model_config = SettingsConfigDict(
		env_file=".env",
		env_prefix="PORTFOLIO_TRACKER_",
		extra="ignore",
	)

	app_env: str = "development"
	api_token: SecretStr | None = None
	database_url: str | None = None
	cache_backend: str = "memory"
	redis_url: str | None = None
	quote_timeout_seconds: float = 10.0
	provider_max_attempts: int = 3
	provider_backoff_seconds: float = 0.5
	known_bad_symbols: str | None = "TEM"
	allowed_origins: str | None = None
	log_level: str = "INFO"

	@property
	def is_production(self) -> bool:
		return self.app_env.strip().lower() == "production"

	def api_token_value(self) -> str | None:
		if self.api_token is None:
			return None

		token = self.api_token.get_secret_value().strip()
		return token or None

	def database_url_value(self) -> str:
		if self.database_url and self.database_url.strip():
			return self.database_url.strip()

		return f"sqlite:///{DATA_DIR / 'portfolio_tracker.db'}"

	def cache_backend_name(self) -> str:
		name = self.cache_backend.strip().lower() or "memory"
		if name not in CACHE_BACKENDS:
			raise ValueError(f"cache_backend must be one of: {', '.join(CACHE_BACKENDS)}.")
		return name

	def known_bad_symbol_set(self) -> frozenset[str]:
		return frozenset(symbol.upper() for symbol in _split_csv(self.known_bad_symbols))

	def cors_origins(self) -> list[str]:
		return _split_csv(self.allowed_origins)

	def validate_runtime(self) -> None:
		self.cache_backend_name()

		if self.provider_max_attempts < 1:
			raise ValueError("PORTFOLIO_TRACKER_PROVIDER_MAX_ATTEMPTS must be at least 1.")

		if self.is_production and self.api_token_value() is None:
			raise ValueError("Production mode requires PORTFOLIO_TRACKER_API_TOKEN.")


@lru_cache
def get_settings() -> Settings:
	return Settings()
