"""CLI for plansync: config, simulate and notifications commands."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console

from .config import Config, load_config
from .logging_config import setup_logging
from .memory import InMemoryNotificationSink
from .simulate import run_scenario, scenario_clock
from .storage import NotificationStore
from .views import render_config, render_feed, render_notifications, render_overlaps


def cmd_config(args: argparse.Namespace, config: Config) -> None:
	"""Print the resolved configuration."""
	render_config(config, Console())


def cmd_simulate(args: argparse.Namespace, config: Config) -> None:
	"""Replay a scenario file and show feeds and overlaps after each step."""
	path = Path(args.scenario)
	if not path.exists():
		print(f"Scenario file not found: {path}")
		sys.exit(1)
	try:
		scenario = json.loads(path.read_text())
	except json.JSONDecodeError as e:
		print(f"Invalid scenario JSON: {e}")
		sys.exit(1)

	console = Console()
	asyncio.run(_simulate(scenario, config, args.db, console))


async def _simulate(scenario: dict, config: Config, db_path: str | None, console: Console) -> None:
	clock = scenario_clock(scenario)
	store = NotificationStore(db_path, clock=clock) if db_path else None
	sink = store or InMemoryNotificationSink(clock)
	if store:
		await store.init()

	try:
		result = await run_scenario(scenario, config=config, sink=sink, clock=clock)

		for step in result.steps:
			console.rule(f"{step.label} @ {step.now.isoformat()}")
			for viewer_id, plans in step.feeds.items():
				render_feed(viewer_id, plans, step.now, console)
			render_overlaps(step.overlaps, console)
			for reason in step.rejected:
				console.print(f"[red]Rejected[/red] {reason}")

		console.rule("notifications")
		if store:
			recipients = sorted(scenario.get("viewers", []))
			for recipient_id in recipients:
				render_notifications(
					await store.list_notifications(recipient_id),
					console,
					title=f"Notifications for {recipient_id}",
				)
		else:
			render_notifications(sink.notifications, console)
		console.print(f"[dim]{result.stats}[/dim]")
	finally:
		if store:
			await store.close()


def cmd_notifications(args: argparse.Namespace, config: Config) -> None:
	"""List or acknowledge stored notifications for a recipient."""
	db_path = args.db or str(config.notifications_db_path)
	asyncio.run(_notifications(db_path, args.recipient, args.unread, args.mark_read))


async def _notifications(db_path: str, recipient_id: str, unread_only: bool, mark_read: bool) -> None:
	store = NotificationStore(db_path)
	await store.init()
	try:
		console = Console()
		notifications = await store.list_notifications(recipient_id, unread_only=unread_only)
		unread = await store.unread_count(recipient_id)
		render_notifications(notifications, console, title=f"Notifications for {recipient_id} ({unread} unread)")
		if mark_read:
			count = await store.mark_all_as_read(recipient_id)
			console.print(f"Marked {count} notifications read.")
	finally:
		await store.close()


def main() -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="plansync",
		description="Live plan feeds and friend-overlap detection",
	)
	parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING or ERROR")
	subparsers = parser.add_subparsers(dest="command")

	# config
	config_parser = subparsers.add_parser("config", help="Show resolved configuration")
	config_parser.set_defaults(func=cmd_config)

	# simulate
	simulate_parser = subparsers.add_parser("simulate", help="Replay a scenario file")
	simulate_parser.add_argument("scenario", type=str, help="Path to a scenario JSON file")
	simulate_parser.add_argument("--db", type=str, default=None, help="Persist notifications to this SQLite file")
	simulate_parser.set_defaults(func=cmd_simulate)

	# notifications
	notif_parser = subparsers.add_parser("notifications", help="List stored notifications")
	notif_parser.add_argument("recipient", type=str, help="Recipient user id")
	notif_parser.add_argument("--unread", action="store_true", help="Only unread notifications")
	notif_parser.add_argument("--mark-read", action="store_true", help="Mark all as read afterwards")
	notif_parser.add_argument("--db", type=str, default=None, help="SQLite file (default: data dir)")
	notif_parser.set_defaults(func=cmd_notifications)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	load_dotenv()
	try:
		config = load_config()
	except ValueError as e:
		print(f"Invalid configuration: {e}")
		sys.exit(1)
	setup_logging(level=args.log_level or config.log_level, log_dir=config.log_dir)

	args.func(args, config)


if __name__ == "__main__":
	main()
