"""Privacy-preserving web analytics collector."""

__version__ = "0.1.0"
