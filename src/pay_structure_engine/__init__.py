"""Multi-tenant pay structure engine."""

__version__ = "1.0.0"
