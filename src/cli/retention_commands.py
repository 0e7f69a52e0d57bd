"""
CLI Retention Commands.

Commands:
    mastery retention seed <user> <lesson> <objective>...  - Schedule first retention checks
    mastery retention review <user> <objective> <score>    - Record a retention-check result
    mastery retention due <user>                           - Show due retention checks
    mastery retention metrics <user>                       - Retention dashboard
    mastery retention optimize <user> --history FILE       - Tune schedule from score history

Cards are kept in a JSON file between invocations (see MASTERY_CARDS_FILE).
"""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config import get_settings
from src.core.models import LearningObjective, ObjectiveCategory
from src.study.retention_engine import ReviewCard, as_utc, utcnow
from src.study.retention_scheduler import (
    RetentionScheduleEntry,
    RetentionScheduler,
    ReviewRecord,
    ScheduleType,
)

console = Console()

retention_app = typer.Typer(
    name="retention",
    help="Spaced-repetition retention checks - seeding, reviews, due queue, metrics",
    no_args_is_help=True,
)

SCHEDULE_STYLES = {
    ScheduleType.INITIAL: "cyan",
    ScheduleType.REVIEW: "white",
    ScheduleType.REMEDIATION: "red",
    ScheduleType.REINFORCEMENT: "green",
}


# ========================================
# Card file persistence
# ========================================


def _cards_path(ctx: typer.Context) -> Path:
    override = (ctx.obj or {}).get("cards_file")
    return Path(override or get_settings().cards_file)


def load_scheduler(path: Path) -> RetentionScheduler:
    """Scheduler built from settings, with cards imported from `path` when it exists."""
    scheduler = RetentionScheduler(get_settings().get_scheduling_options())
    if path.exists():
        payload = json.loads(path.read_text(encoding="utf-8"))
        scheduler.import_cards(ReviewCard.from_dict(item) for item in payload.get("cards", []))
        logger.debug(f"Loaded {len(scheduler.store)} cards from {path}")
    return scheduler


def save_scheduler(scheduler: RetentionScheduler, path: Path) -> None:
    payload = {"cards": [card.to_dict() for card in scheduler.export_cards()]}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.debug(f"Saved {len(payload['cards'])} cards to {path}")


def load_history(path: Path) -> list[ReviewRecord]:
    """Read a JSON list of {objective_id, score, completed_at?} records."""
    try:
        items = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise typer.BadParameter(f"Cannot read history file {path}: {e}") from e

    records = []
    for item in items:
        completed_at = item.get("completed_at")
        if completed_at:
            completed_at = as_utc(datetime.fromisoformat(completed_at))
        records.append(
            ReviewRecord(
                objective_id=item["objective_id"],
                score=float(item["score"]),
                completed_at=completed_at or None,
            )
        )
    return records


# ========================================
# Rendering
# ========================================


def _format_due(due: datetime, now: datetime) -> str:
    days = (due - now).total_seconds() / 86400
    if days < -1:
        return f"[red]{-days:.0f}d overdue[/red]"
    elif days <= 0:
        return "[yellow]now[/yellow]"
    return f"in {days:.1f}d"


def _entries_table(title: str, entries: list[RetentionScheduleEntry], now: datetime) -> Table:
    table = Table(title=title)
    table.add_column("Objective", style="bold")
    table.add_column("Type")
    table.add_column("Priority", justify="right")
    table.add_column("Due")
    table.add_column("Est. min", justify="right")
    table.add_column("Difficulty", justify="right")

    for entry in entries:
        style = SCHEDULE_STYLES.get(entry.schedule_type, "white")
        table.add_row(
            entry.objective_id,
            f"[{style}]{entry.schedule_type.value}[/{style}]",
            str(entry.priority),
            _format_due(entry.due_date, now),
            str(entry.estimated_duration_minutes),
            f"{entry.difficulty_adjustment:+.1f}",
        )
    return table


# ========================================
# Commands
# ========================================


@retention_app.callback()
def retention_callback(
    ctx: typer.Context,
    cards_file: Annotated[
        Path | None, typer.Option("--cards-file", help="Card store JSON file")
    ] = None,
) -> None:
    """Retention scheduling commands."""
    ctx.ensure_object(dict)
    if cards_file is not None:
        ctx.obj["cards_file"] = str(cards_file)


@retention_app.command("seed")
def retention_seed(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="Learner id")],
    lesson_id: Annotated[str, typer.Argument(help="Completed lesson id")],
    objective_ids: Annotated[list[str], typer.Argument(help="Objective ids in the lesson")],
    category: Annotated[
        ObjectiveCategory, typer.Option("--category", "-c", help="Category of the objectives")
    ] = ObjectiveCategory.KNOWLEDGE,
) -> None:
    """
    Schedule the first retention check for each objective of a completed lesson.

    Existing cards are kept as they are.
    """
    path = _cards_path(ctx)
    scheduler = load_scheduler(path)
    now = utcnow()

    objectives = [LearningObjective(id=oid, category=category) for oid in objective_ids]
    entries = scheduler.seed_initial(user_id, lesson_id, objectives, now)
    save_scheduler(scheduler, path)

    console.print(_entries_table(f"Seeded {len(entries)} retention checks", entries, now))


@retention_app.command("review")
def retention_review(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="Learner id")],
    objective_id: Annotated[str, typer.Argument(help="Objective that was checked")],
    score: Annotated[float, typer.Argument(help="Score as a fraction 0-1")],
    response_time: Annotated[
        float | None, typer.Option("--response-time", "-t", help="Answer time in seconds")
    ] = None,
) -> None:
    """Record the result of a retention check."""
    path = _cards_path(ctx)
    scheduler = load_scheduler(path)
    now = utcnow()

    entry = scheduler.record_outcome(user_id, objective_id, score, response_time, now)
    if entry is None:
        rprint(
            f"[red]Error:[/red] no card for {user_id}/{objective_id} "
            f"or score {score} outside 0-1"
        )
        raise typer.Exit(code=1)

    save_scheduler(scheduler, path)
    card = scheduler.get_card(user_id, objective_id)

    content = Text()
    content.append(f"Next check: {entry.schedule_type.value}\n", style="bold")
    content.append(f"Due: {entry.due_date:%Y-%m-%d %H:%M} UTC\n")
    if card is not None:
        content.append(
            f"Interval: {card.interval_days:g} days | Repetitions: {card.repetition_count} | "
            f"Ease: {card.ease_factor:.2f}\n"
        )
        content.append(f"Success: {card.successful_reviews}/{card.total_reviews}")

    console.print(Panel(content, title=f"[bold]{objective_id}[/bold]", border_style="blue"))


@retention_app.command("due")
def retention_due(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="Learner id")],
    include_overdue: Annotated[
        bool, typer.Option("--include-overdue/--no-overdue", help="Include overdue items")
    ] = True,
) -> None:
    """Show retention checks that are due now, most urgent first."""
    scheduler = load_scheduler(_cards_path(ctx))
    now = utcnow()

    entries = scheduler.due_items(user_id, now, include_overdue)
    if not entries:
        rprint("[green]Nothing due - all caught up![/green]")
        return

    console.print(_entries_table(f"Due for {user_id}", entries, now))


@retention_app.command("metrics")
def retention_metrics(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="Learner id")],
) -> None:
    """Show retention counters for a learner."""
    scheduler = load_scheduler(_cards_path(ctx))
    metrics = scheduler.metrics(user_id, utcnow())

    table = Table(title=f"Retention Metrics: {user_id}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Scheduled objectives", str(metrics.total_scheduled))
    table.add_row("Completed today", str(metrics.completed_today))
    table.add_row("Due today", str(metrics.due_today))
    table.add_row("Overdue", f"[red]{metrics.overdue}[/red]" if metrics.overdue else "0")
    table.add_row("Upcoming week", str(metrics.upcoming_week))
    table.add_row("Retention rate", f"{metrics.average_retention_rate:.0%}")
    table.add_row("Streak", f"{metrics.streak_days} days")
    table.add_row("Review time", f"{metrics.total_review_time_minutes} min")

    console.print(table)


@retention_app.command("optimize")
def retention_optimize(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="Learner id")],
    history: Annotated[
        Path, typer.Option("--history", help="JSON list of completed reviews")
    ],
) -> None:
    """
    Analyze score history and apply critical/high priority optimizations.

    Medium and low priority recommendations are shown but not applied.
    """
    from src.study.retention_optimizer import EngagementMetrics, RetentionOptimizer

    path = _cards_path(ctx)
    scheduler = load_scheduler(path)
    settings = get_settings()
    now = utcnow()

    metrics = scheduler.metrics(user_id, now)
    engagement = EngagementMetrics(streak_days=metrics.streak_days, overdue_count=metrics.overdue)

    optimizer = RetentionOptimizer(
        scheduler,
        max_workers=settings.optimizer_max_workers,
        user_timeout_seconds=settings.optimizer_user_timeout_seconds,
    )
    result = optimizer.optimize_user_retention(user_id, load_history(history), engagement)
    save_scheduler(scheduler, path)

    if not result.recommendations:
        rprint("[green]No changes recommended.[/green]")
    else:
        table = Table(title=f"Recommendations for {user_id}")
        table.add_column("Priority")
        table.add_column("Type")
        table.add_column("Objective")
        table.add_column("Impact", justify="right")
        table.add_column("Applied")
        for rec in result.recommendations:
            table.add_row(
                rec.priority.value,
                rec.type.value,
                rec.objective_id or "-",
                f"{rec.expected_impact:.0%}",
                "[green]yes[/green]" if rec.priority.auto_apply else "[dim]advisory[/dim]",
            )
        console.print(table)

    improvements = result.expected_improvements
    rprint(
        f"Applied {result.optimizations_applied} | expected retention "
        f"+{improvements.retention_rate:.0%}, efficiency +{improvements.time_efficiency:.0%}, "
        f"mastery speed +{improvements.mastery_speed:.0%}"
    )
