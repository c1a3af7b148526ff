"""API routes module."""
