"""Tenant connectors."""
