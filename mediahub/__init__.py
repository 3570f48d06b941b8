"""MediaHub: range streaming and asynchronous processing for stored media."""

__version__ = "0.1.0"
