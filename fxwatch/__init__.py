"""Currency rate monitoring and threshold alerts."""

__version__ = "0.1.0"
