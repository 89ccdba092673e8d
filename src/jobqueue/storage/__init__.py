"""SQLite storage layer for the job queue."""
