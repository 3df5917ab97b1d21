"""Mafia rating data platform: import pipeline, control API and CLI."""

__version__ = "0.1.0"
