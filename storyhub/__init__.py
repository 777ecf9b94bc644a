"""Batch story generation for English-learning scenarios."""

__version__ = "0.1.0"
