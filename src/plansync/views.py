"""Rich views for feeds, overlaps, notifications and configuration."""

from datetime import datetime
from typing import Iterable, Optional

from rich.console import Console
from rich.table import Table

from .config import Config
from .models import Notification, OverlapRecord, Plan


def format_offset(moment: datetime, now: datetime) -> str:
	"""Format a moment relative to now, e.g. 'in 1h 30m' or '45m ago'."""
	total = int((moment - now).total_seconds())
	future = total >= 0
	total = abs(total)
	hours, rem = divmod(total, 3600)
	minutes = rem // 60
	if hours and minutes:
		text = f"{hours}h {minutes}m"
	elif hours:
		text = f"{hours}h"
	else:
		text = f"{minutes}m"
	return f"in {text}" if future else f"{text} ago"


def render_feed(
	viewer_id: str,
	plans: Iterable[Plan],
	now: datetime,
	console: Optional[Console] = None,
) -> None:
	"""Render one viewer's live feed."""
	console = console or Console()
	plans = list(plans)

	if not plans:
		console.print(f"[dim]{viewer_id}: no live plans.[/dim]")
		return

	table = Table(title=f"Feed for {viewer_id}")
	table.add_column("Plan", style="cyan")
	table.add_column("Owner")
	table.add_column("Kind")
	table.add_column("Title")
	table.add_column("Starts", justify="right")
	table.add_column("Where")

	for plan in plans:
		where = plan.location.name if plan.location else ""
		if plan.coordinates:
			where = f"{where} ({plan.coordinates[0]:.3f}, {plan.coordinates[1]:.3f})".strip()
		owner_style = "bold" if plan.owner_id == viewer_id else ""
		table.add_row(
			plan.id,
			f"[{owner_style}]{plan.owner_id}[/{owner_style}]" if owner_style else plan.owner_id,
			plan.kind.value,
			plan.title,
			format_offset(plan.start_time, now),
			where,
		)

	console.print(table)


def render_overlaps(records: Iterable[OverlapRecord], console: Optional[Console] = None) -> None:
	console = console or Console()
	records = list(records)

	if not records:
		console.print("[dim]No active overlaps.[/dim]")
		return

	table = Table(title=f"Active overlaps ({len(records)})")
	table.add_column("Plan A", style="cyan")
	table.add_column("Plan B", style="cyan")
	table.add_column("Owners")
	table.add_column("Distance", justify="right")
	table.add_column("Time apart", justify="right")

	for record in records:
		table.add_row(
			record.plan_a_id,
			record.plan_b_id,
			f"{record.owner_a_id} / {record.owner_b_id}",
			f"{record.distance_km:.1f} km",
			f"{record.time_delta_hours:.1f} h",
		)

	console.print(table)


def render_notifications(
	notifications: Iterable[Notification],
	console: Optional[Console] = None,
	title: str = "Notifications",
) -> None:
	console = console or Console()
	notifications = list(notifications)

	if not notifications:
		console.print("[dim]No notifications.[/dim]")
		return

	table = Table(title=title)
	table.add_column("#", justify="right")
	table.add_column("To")
	table.add_column("Kind", style="magenta")
	table.add_column("Details")
	table.add_column("Read", justify="center")

	for n in notifications:
		details = ", ".join(f"{k}={v}" for k, v in sorted(n.payload.items()))
		table.add_row(
			str(n.id or ""),
			n.recipient_id,
			n.kind,
			details,
			"[green]✓[/green]" if n.read else "[yellow]•[/yellow]",
		)

	console.print(table)


def render_config(config: Config, console: Optional[Console] = None) -> None:
	console = console or Console()
	table = Table(title="plansync configuration")
	table.add_column("Setting", style="cyan")
	table.add_column("Value")
	for name, value in config.as_dict().items():
		table.add_row(name, str(value))
	console.print(table)
