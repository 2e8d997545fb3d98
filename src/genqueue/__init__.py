"""Paid generation job queue with credit reservation and exactly-once settlement."""

__version__ = "0.1.0"
