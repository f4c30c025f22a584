from collections.abc import Iterator
from typing import Annotated

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from portfolio_tracker.security import normalize_user_id, verify_api_token
from portfolio_tracker.settings import get_settings


@pytest.fixture(autouse=True)
def reset_settings_cache(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
	for env_name in (
		"PORTFOLIO_TRACKER_API_TOKEN",
		"PORTFOLIO_TRACKER_APP_ENV",
		"PORTFOLIO_TRACKER_CACHE_BACKEND",
		"PORTFOLIO_TRACKER_KNOWN_BAD_SYMBOLS",
		"PORTFOLIO_TRACKER_ALLOWED_ORIGINS",
	):
		monkeypatch.delenv(env_name, raising=False)

	get_settings.cache_clear()
	yield
	get_settings.cache_clear()


def _build_client() -> TestClient:
	app = FastAPI()

	@app.post("/protected")
	def protected(_: Annotated[None, Depends(verify_api_token)]) -> dict[str, str]:
		return {"status": "ok"}

	return TestClient(app)


def test_settings_default_to_local_development() -> None:
	settings = get_settings()

	assert settings.is_production is False
	assert settings.cache_backend_name() == "memory"
	assert settings.known_bad_symbol_set() == frozenset({"TEM"})
	assert settings.cors_origins() == []


def test_settings_parse_comma_separated_values(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setenv("PORTFOLIO_TRACKER_KNOWN_BAD_SYMBOLS", "tem, xyz ,")
	monkeypatch.setenv("PORTFOLIO_TRACKER_ALLOWED_ORIGINS", "https://app.example.com,http://localhost:5173")
	settings = get_settings()

	assert settings.known_bad_symbol_set() == frozenset({"TEM", "XYZ"})
	assert settings.cors_origins() == ["https://app.example.com", "http://localhost:5173"]


def test_settings_validate_runtime_requires_token_in_production(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setenv("PORTFOLIO_TRACKER_APP_ENV", "production")

	with pytest.raises(ValueError, match="PORTFOLIO_TRACKER_API_TOKEN"):
		get_settings().validate_runtime()


def test_settings_validate_runtime_rejects_unknown_cache_backend(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setenv("PORTFOLIO_TRACKER_CACHE_BACKEND", "memcached")

	with pytest.raises(ValueError, match="cache_backend"):
		get_settings().validate_runtime()


def test_normalize_user_id_lowercases_and_validates() -> None:
	assert normalize_user_id("  Alice_01 ") == "alice_01"

	with pytest.raises(ValueError, match="required"):
		normalize_user_id("   ")

	with pytest.raises(ValueError):
		normalize_user_id("alice-smith")

	with pytest.raises(ValueError):
		normalize_user_id("a" * 33)


def test_verify_api_token_allows_missing_token_when_not_configured() -> None:
	response = _build_client().post("/protected")

	assert response.status_code == 200


def test_verify_api_token_accepts_header_or_bearer_token(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setenv("PORTFOLIO_TRACKER_API_TOKEN", "secret-token")
	client = _build_client()

	assert client.post("/protected", headers={"X-API-Key": "secret-token"}).status_code == 200
	assert client.post("/protected", headers={"Authorization": "Bearer secret-token"}).status_code == 200


def test_verify_api_token_rejects_invalid_token(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setenv("PORTFOLIO_TRACKER_API_TOKEN", "secret-token")
	response = _build_client().post("/protected", headers={"X-API-Key": "wrong-token"})

	assert response.status_code == 401
	assert response.json() == {"detail": "Invalid API token."}


def test_verify_api_token_rejects_missing_token_when_required(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setenv("PORTFOLIO_TRACKER_API_TOKEN", "secret-token")
	response = _build_client().post("/protected")

	assert response.status_code == 401
	assert response.json() == {"detail": "Missing API token."}
