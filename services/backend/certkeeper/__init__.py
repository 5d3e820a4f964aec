"""certkeeper: certificate lifecycle management for Windows PKI estates."""

__version__ = "1.0.0"
