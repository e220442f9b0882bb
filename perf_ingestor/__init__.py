"""Weekly query-performance report ingestor with a rotating API credential pool."""

__version__ = "0.1.0"
