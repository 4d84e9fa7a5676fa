"""Adaptive throttling and resilience controller for rate-sensitive automation."""

__version__ = "1.0.0"
