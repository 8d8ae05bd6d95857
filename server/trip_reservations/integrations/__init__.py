"""Clients for external systems."""
