"""SQLite persistence for jobs, attempts and cached results."""
