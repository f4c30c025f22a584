"""Logging configuration."""

import logging
import sys

from portfolio_tracker.settings import get_settings


def configure_logging() -> None:
	"""Configure application logging."""
	settings = get_settings()

	logging.basicConfig(
		level=getattr(logging, settings.log_level.upper(), logging.INFO),
		format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
		handlers=[logging.StreamHandler(sys.stdout)],
	)

	logging.getLogger("httpx").setLevel(logging.WARNING)
	logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
