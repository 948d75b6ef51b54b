"""Cross-source event catalog: deduplication and merge engine."""

__version__ = "0.1.0"
