"""Replica engine services."""
