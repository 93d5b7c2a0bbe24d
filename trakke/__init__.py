"""Viewport-scoped POI retrieval for the Trakke outdoor map of Norway."""

__version__ = "0.3.0"
