"""Multi-tenant marketplace integration backend."""

__version__ = "1.0.0"
