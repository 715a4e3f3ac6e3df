"""Course sharing backend with near-duplicate detection."""

__version__ = "0.4.0"
