"""Approval-gated terminal command assistant."""

__version__ = "0.1.0"
