"""Coordination core for the live event-support admin console."""

__version__ = "0.1.0"
