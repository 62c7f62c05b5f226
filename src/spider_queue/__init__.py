"""Crash-recoverable task queue driving an external scraping worker."""

__version__ = "0.1.0"
