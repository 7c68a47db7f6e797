"""Photo Indexer: cache AI-generated image metadata in sidecar records."""

__version__ = "0.1.0"
