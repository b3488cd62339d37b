"""Campus Storage: presigned attachment uploads for school administration records."""

__version__ = "0.1.0"
