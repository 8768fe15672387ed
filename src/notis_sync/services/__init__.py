"""Sync, monitoring and migration services."""
