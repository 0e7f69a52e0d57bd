"""
Typer CLI for mastery-path.

Commands:
    mastery retention seed      - Schedule first retention checks after a lesson
    mastery retention review    - Record a retention-check result
    mastery retention due       - Show due retention checks
    mastery retention metrics   - Retention dashboard for a learner
    mastery retention optimize  - Tune a learner's schedule from score history
    mastery score               - Apply scoring penalties and classify a score

Usage:
    mastery --help
    mastery retention seed alice lesson-1 obj-1 obj-2 --category application
    mastery retention review alice obj-1 0.9 --response-time 8
    mastery --log-level DEBUG retention due alice
    mastery score 92 --hints 1
"""

from __future__ import annotations

import sys
from typing import Annotated

import typer
from loguru import logger
from rich import print as rprint

from config import get_settings
from src.cli.retention_commands import retention_app
from src.core.mastery import MasteryType, apply_performance_penalties, calculate_mastery_status

app = typer.Typer(
    name="mastery",
    help="mastery-path CLI: spaced retention checks and mastery tracking",
    no_args_is_help=True,
)

app.add_typer(retention_app, name="retention")


@app.callback()
def main_callback(
    ctx: typer.Context,
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Override the configured log level")
    ] = None,
) -> None:
    """
    Mastery Path CLI.

    Configure with MASTERY_* environment variables or a .env file.
    """
    ctx.ensure_object(dict)
    logger.remove()
    logger.add(sys.stderr, level=(log_level or get_settings().log_level).upper())


@app.command("score")
def score_command(
    raw_score: Annotated[float, typer.Argument(help="Score before penalties (0-100)")],
    hints: Annotated[int, typer.Option("--hints", help="Hints used")] = 0,
    time_spent: Annotated[
        float | None, typer.Option("--time-spent", help="Seconds spent")
    ] = None,
    time_limit: Annotated[
        float | None, typer.Option("--time-limit", help="Seconds allowed")
    ] = None,
    mastery_type: Annotated[
        MasteryType, typer.Option("--type", help="Threshold to check against")
    ] = MasteryType.LESSON,
) -> None:
    """Apply the configured hint and time penalties and classify the result."""
    policy = get_settings().get_penalty_policy()
    adjusted = apply_performance_penalties(raw_score, hints, time_spent, time_limit, policy)
    result = calculate_mastery_status(adjusted, mastery_type)

    level = result.mastery_level
    verdict = "[green]mastered[/green]" if result.achieved_mastery else "[yellow]not yet[/yellow]"
    rprint(
        f"Score: {adjusted:g} ({raw_score:g} before penalties) | "
        f"[{level.color}]{level.value}[/{level.color}] | {verdict}"
    )
    for recommendation in result.recommendations:
        rprint(f"  - {recommendation}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
