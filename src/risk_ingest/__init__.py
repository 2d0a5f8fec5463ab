"""Bulk patient risk ingestion: CSV upload, risk scoring, upsert, cache invalidation."""

__version__ = "1.0.0"
