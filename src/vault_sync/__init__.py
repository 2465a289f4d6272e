"""Synchronization and conflict-resolution engine for document vaults."""

__version__ = "0.1.0"
