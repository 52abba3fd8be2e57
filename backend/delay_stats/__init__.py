"""Live delay tracking for the HZPP rail network."""

__version__ = "0.1.0"
