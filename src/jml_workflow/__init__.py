"""Orchestration engine for joiner/mover/leaver workflows."""

__version__ = "0.1.0"
