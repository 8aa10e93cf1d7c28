"""Countersign - dual-party contract countersigning service."""

__version__ = "0.3.0"
