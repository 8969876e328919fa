"""Gripp Mirror - scheduled pull-based mirror of Gripp data into SQLite."""

__version__ = "1.0.0"
