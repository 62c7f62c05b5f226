"""SQLite persistence for tasks, logs, queue items and settings."""
