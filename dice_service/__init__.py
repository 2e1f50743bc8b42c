"""Dice rolling HTTP service with correlated traces, metrics and logs."""

__version__ = "0.1.0"
