"""Freepilot: resolve GitHub issues with a supervised coding agent."""

__version__ = "0.1.0"
