from __future__ import annotations

import argparse
import asyncio
import logging

from portfolio_tracker.database import init_db
from portfolio_tracker.logging_config import configure_logging
from portfolio_tracker.main import portfolio_engine
from portfolio_tracker.services.leaderboard import LEADERBOARD_METRICS

logger = logging.getLogger("warm_caches")


def parse_args() -> argparse.Namespace:
	parser = argparse.ArgumentParser(
		description="Refresh today's valuations, performance series and leaderboards for every user.",
	)
	parser.add_argument(
		"--days",
		type=int,
		action="append",
		help="Lookback window to warm (repeatable). Defaults to 30.",
	)
	parser.add_argument(
		"--skip-leaderboard",
		action="store_true",
		help="Only warm performance series.",
	)
	return parser.parse_args()


async def warm(lookback_days: list[int], skip_leaderboard: bool) -> int:
	users = await portfolio_engine.lot_source.list_users()
	logger.info("Warming caches for %s users.", len(users))
	failures = 0
	for user_id in users:
		try:
			await portfolio_engine.warm_user(user_id, lookback_days)
		except Exception:
			failures += 1
			logger.exception("Scheduled refresh failed for %s.", user_id)

	if not skip_leaderboard:
		for metric in LEADERBOARD_METRICS:
			await portfolio_engine.get_leaderboard(metric, refresh=True)

	await portfolio_engine.close()
	return failures


def main() -> int:
	args = parse_args()
	configure_logging()
	init_db()
	failures = asyncio.run(warm(args.days or [30], args.skip_leaderboard))
	return 1 if failures else 0


if __name__ == "__main__":
	raise SystemExit(main())
