"""Filters, readers, batching, sync-mode selection and full-sync document I/O for MongoDB replication."""

__version__ = "0.1.0"