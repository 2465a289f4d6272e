"""Core helpers shared by the sync engine."""
