"""SQLite storage for jobs."""
