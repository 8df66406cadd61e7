"""Authentication context inventory for Microsoft tenants."""

__version__ = "0.1.0"
