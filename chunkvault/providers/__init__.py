"""Embedding provider backends."""
