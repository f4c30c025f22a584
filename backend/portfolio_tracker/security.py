from __future__ import annotations

import hmac
import re
from typing import Annotated

from fastapi import Header, HTTPException

from portfolio_tracker.settings import get_settings

USER_ID_PATTERN = re.compile(r"^[a-z0-9_]{1,32}$")
BEARER_PREFIX = "Bearer "


def normalize_user_id(value: str | int | None) -> str:
	user_id = str(value if value is not None else "").strip().lower()
	if not user_id:
		raise ValueError("User ID is required.")
	if not USER_ID_PATTERN.fullmatch(user_id):
		raise ValueError("User ID may only contain 1-32 lowercase letters, digits and underscores.")
	return user_id


def _extract_token(x_api_key: str | None, authorization: str | None) -> str | None:
	if x_api_key is not None:
		return x_api_key.strip()
	if authorization is not None and authorization.startswith(BEARER_PREFIX):
		return authorization[len(BEARER_PREFIX):].strip()
	return None


def verify_api_token(
	x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
	authorization: Annotated[str | None, Header()] = None,
) -> None:
	"""Require the shared server token on maintenance and mutating routes when one is set."""
	expected_token = get_settings().api_token_value()
	if expected_token is None:
		return

	provided_token = _extract_token(x_api_key, authorization)
	if provided_token is None:
		raise HTTPException(status_code=401, detail="Missing API token.")

	if not hmac.compare_digest(provided_token, expected_token):
		raise HTTPException(status_code=401, detail="Invalid API token.")
