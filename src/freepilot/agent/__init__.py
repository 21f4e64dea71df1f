"""Coding-agent launcher and a local stand-in worker for tests."""
