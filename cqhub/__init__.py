"""Provider registry and verification, SQL policy execution and console progress helpers."""

__version__ = "0.1.0"