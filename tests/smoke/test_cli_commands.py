"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output.
They don't validate correctness deeply - just that commands work.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import json
import subprocess
import sys
from pathlib import Path

import pytest

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent


def run_cli_command(*args: str, timeout: int = 30) -> tuple[int, str, str]:
    """
    Run a CLI command and return exit code, stdout, stderr.

    Args:
        args: Arguments after 'python -m src.cli.main'
        timeout: Maximum time to wait

    Returns:
        Tuple of (exit_code, stdout, stderr)
    """
    result = subprocess.run(
        [sys.executable, "-m", "src.cli.main", *args],
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        timeout=timeout,
    )

    return result.returncode, result.stdout, result.stderr


@pytest.fixture
def cards_file(tmp_path):
    return tmp_path / "cards.json"


def retention(cards_file: Path, *args: str) -> tuple[int, str, str]:
    return run_cli_command("retention", "--cards-file", str(cards_file), *args)


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self):
        """Main help should display without errors."""
        code, stdout, stderr = run_cli_command("--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "retention" in stdout

    def test_retention_help(self):
        code, stdout, stderr = run_cli_command("retention", "--help")

        assert code == 0, f"Retention help failed: {stderr}"
        for command in ("seed", "review", "due", "metrics", "optimize"):
            assert command in stdout


class TestCLIRetention:
    """Seed, review and inspect cards through the JSON card file."""

    def test_seed_writes_cards(self, cards_file):
        code, stdout, stderr = retention(
            cards_file, "seed", "alice", "lesson-1", "obj-1", "obj-2", "-c", "application"
        )

        assert code == 0, f"Seed failed: {stderr}"
        cards = json.loads(cards_file.read_text())["cards"]
        assert {card["objective_id"] for card in cards} == {"obj-1", "obj-2"}
        assert all(card["category"] == "application" for card in cards)

    def test_review_updates_card(self, cards_file):
        retention(cards_file, "seed", "alice", "lesson-1", "obj-1")
        code, stdout, stderr = retention(cards_file, "review", "alice", "obj-1", "0.9", "-t", "8")

        assert code == 0, f"Review failed: {stderr}"
        assert "obj-1" in stdout
        card = json.loads(cards_file.read_text())["cards"][0]
        assert card["total_reviews"] == 1
        assert card["last_score"] == 0.9

    def test_review_without_card_fails(self, cards_file):
        code, stdout, stderr = retention(cards_file, "review", "alice", "obj-9", "0.9")

        assert code == 1
        assert "Error" in stdout

    def test_due_nothing_yet(self, cards_file):
        retention(cards_file, "seed", "alice", "lesson-1", "obj-1")
        code, stdout, stderr = retention(cards_file, "due", "alice")

        assert code == 0, f"Due failed: {stderr}"
        assert "Nothing due" in stdout

    def test_metrics_runs(self, cards_file):
        retention(cards_file, "seed", "alice", "lesson-1", "obj-1")
        code, stdout, stderr = retention(cards_file, "metrics", "alice")

        assert code == 0, f"Metrics failed: {stderr}"
        assert "Retention Metrics" in stdout

    def test_optimize_applies_critical_items(self, cards_file, tmp_path):
        retention(cards_file, "seed", "alice", "lesson-1", "obj-1")
        history = tmp_path / "history.json"
        history.write_text(json.dumps([{"objective_id": "obj-1", "score": 0.5}] * 4))

        code, stdout, stderr = retention(cards_file, "optimize", "alice", "--history", str(history))

        assert code == 0, f"Optimize failed: {stderr}"
        assert "Applied 1" in stdout
        card = json.loads(cards_file.read_text())["cards"][0]
        assert card["ease_factor"] == pytest.approx(2.4)

    def test_optimize_twice_adjusts_once(self, cards_file, tmp_path):
        retention(cards_file, "seed", "alice", "lesson-1", "obj-1")
        history = tmp_path / "history.json"
        history.write_text(json.dumps([{"objective_id": "obj-1", "score": 0.5}] * 4))

        retention(cards_file, "optimize", "alice", "--history", str(history))
        code, stdout, stderr = retention(cards_file, "optimize", "alice", "--history", str(history))

        assert code == 0, f"Optimize failed: {stderr}"
        assert "Applied 0" in stdout
        card = json.loads(cards_file.read_text())["cards"][0]
        assert card["ease_factor"] == pytest.approx(2.4)
        assert card["optimized_scores"] == [0.5, 0.5, 0.5, 0.5]


class TestCLIScore:
    """Penalty scoring with the configured policy."""

    def test_hint_penalty_applied(self):
        code, stdout, stderr = run_cli_command("score", "92", "--hints", "1")

        assert code == 0, f"Score failed: {stderr}"
        assert "Score: 87" in stdout
        assert "proficient" in stdout
        assert "mastered" in stdout

    def test_low_score_gets_recommendations(self):
        code, stdout, stderr = run_cli_command("score", "40")

        assert code == 0, f"Score failed: {stderr}"
        assert "none" in stdout
        assert "Review prerequisite concepts" in stdout
