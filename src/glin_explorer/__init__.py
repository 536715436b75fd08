"""Live sync and lookup engine for the GLIN block explorer."""

__version__ = "0.1.0"
