"""Persistent priority job queue with a single-node runner."""

__version__ = "0.1.0"
