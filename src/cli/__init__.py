"""Command-line interface for mastery-path."""
