"""Iterative worker/reviewer loop for issue-driven repository changes."""

__version__ = "0.4.0"
