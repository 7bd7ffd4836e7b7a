"""svcwatch: service registry and membership change fan-out."""

__version__ = "0.1.0"
