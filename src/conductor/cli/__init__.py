"""Command-line interface (``conductor``)."""

from conductor.cli.app import app

__all__ = ["app"]
