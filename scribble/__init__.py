"""Scribble - a task list that syncs across devices through a single blob store."""

__version__ = "0.1.0"
