"""
CLI package for the media job worker

Provides the command-line interface for running the worker, submitting jobs
and inspecting checkpoints and dead letters.
"""

from .main import main, cli

__all__ = ["main", "cli"]
