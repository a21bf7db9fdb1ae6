"""Baton - hand-to-hand chain custody attendance engine."""

__version__ = "1.0.0"
