"""Job orchestration and retry engine for proxy-backed page fetching."""

__version__ = "1.0.0"
