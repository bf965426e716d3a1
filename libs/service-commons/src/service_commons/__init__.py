"""Shared infrastructure for the marketplace services."""
