"""Batch job engine: handler registry, run locking, interval scheduling."""
