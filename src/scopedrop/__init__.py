"""ScopeDrop client-side resilience layer."""

__version__ = "0.1.0"
