"""Supervised terminal sessions for command-line coding agents."""

__version__ = "0.1.0"
