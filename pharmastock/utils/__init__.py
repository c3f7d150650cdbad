"""Utilities: paths and logging."""
