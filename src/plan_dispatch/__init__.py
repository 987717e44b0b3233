"""Generation job dispatcher for rate-limited generative backends."""

__version__ = "0.1.0"
